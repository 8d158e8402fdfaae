"""Shared constants across the application."""

# Entity kinds synced from the upstream platform
ENTITY_ORDERS = "orders"
ENTITY_CUSTOMERS = "customers"
ENTITY_PRODUCTS = "products"

# Webhook topic prefixes mapped to the entity kind they mutate
WEBHOOK_TOPIC_PREFIXES = {
    "orders/": ENTITY_ORDERS,
    "customers/": ENTITY_CUSTOMERS,
    "products/": ENTITY_PRODUCTS,
}

# Shopify webhook headers
HEADER_HMAC = "X-Shopify-Hmac-Sha256"
HEADER_TOPIC = "X-Shopify-Topic"
HEADER_SHOP_DOMAIN = "X-Shopify-Shop-Domain"
HEADER_WEBHOOK_ID = "X-Shopify-Webhook-Id"
HEADER_ACCESS_TOKEN = "X-Shopify-Access-Token"

# Default query parameters sent on the first page of each entity list
ENTITY_DEFAULT_PARAMS = {
    ENTITY_ORDERS: {"status": "any"},
    ENTITY_CUSTOMERS: {},
    ENTITY_PRODUCTS: {},
}

# Upstream page size cap
MAX_PAGE_LIMIT = 250

# Sync status values
SYNC_STATUS_RUNNING = "running"
SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_ERROR = "error"

# Redis key prefixes
WEBHOOK_SEEN_KEY_PREFIX = "webhook:seen:shopify"
SYNC_LOCK_KEY_PREFIX = "sync:lock"
