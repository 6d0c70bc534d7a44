from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.security import (
    SecurityHeadersMiddleware,
    HTTPSRedirectMiddleware,
)
from app.middleware.exceptions import register_exception_handlers
from app.routers import auth, clients, credits, expenses, health, products, roles, sales, stats
from app.services.scheduler import lifespan

app = FastAPI(
    title="Boutique POS",
    description="Point-of-sale back office: catalog, sales, credits, expenses",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (the last one added runs first) ──────────────
# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# HTTPS redirect (only when TLS is enabled)
app.add_middleware(HTTPSRedirectMiddleware, force_https=False)

# Rate limiting
app.add_middleware(
    RateLimitMiddleware,
    default_limit=100,  # 100 requests per minute (anonymous/IP)
    authenticated_limit=500,  # 500 requests per minute (JWT user)
    default_window=60,
    exempt_paths=["/health", "/health/ready", "/docs", "/openapi.json"],
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
# Public
app.include_router(health.router)
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])

# Permission-gated
app.include_router(roles.router, prefix="/api/roles", tags=["roles"])
app.include_router(products.router, prefix="/api/products", tags=["products"])
app.include_router(clients.router, prefix="/api/clients", tags=["clients"])
app.include_router(sales.router, prefix="/api/sales", tags=["sales"])
app.include_router(credits.router, prefix="/api/credits", tags=["credits"])
app.include_router(expenses.router, prefix="/api/expenses", tags=["expenses"])
app.include_router(stats.router, prefix="/api/stats", tags=["stats"])
