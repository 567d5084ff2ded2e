"""
Backend API Service - FastAPI Application

Responsibilities:
- Expose the ingestion trigger for an external scheduler
- Health check

Endpoints:
- GET /api/cron - Run one ingestion (optional bearer token: CRON_SECRET)
- GET /health - Health check
"""
