"""
Headline Aggregator HTTP Server
Serves the aggregated headline feed over HTTP.

Usage:
    python http_server.py                    # Run on $PORT or 3000
    python http_server.py --port 8000        # Run on custom port
    uvicorn http_server:app --host 0.0.0.0   # Production with uvicorn
"""
import os
import argparse
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from aggregator import (
    FeedCache,
    get_health,
    get_metrics,
    logger,
    VERSION,
)

DEFAULT_PORT = int(os.environ.get('PORT', '3000'))

# =============================================================================
# FASTAPI APP SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI app."""
    if getattr(app.state, 'feed_cache', None) is None:
        app.state.feed_cache = FeedCache()
    logger.info("Headline Aggregator HTTP Server starting...")
    yield
    logger.info("Headline Aggregator HTTP Server shutting down...")

app = FastAPI(
    title="Headline Aggregator",
    description="Cached headline feed crawled from a fixed set of news sites",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_feed_cache(request: Request) -> FeedCache:
    return request.app.state.feed_cache

# =============================================================================
# REST API ENDPOINTS
# =============================================================================

@app.get("/api/aggregate")
def aggregate_endpoint(feed_cache: FeedCache = Depends(get_feed_cache)):
    """
    Aggregated feed, newest first.

    Served from the cache while it is fresh; otherwise every site is crawled
    again before responding.
    """
    try:
        batch = feed_cache.get_or_build()
    except Exception:
        logger.exception("aggregate error")
        return JSONResponse(status_code=500, content={"error": "failed to aggregate"})
    return batch.to_list()

@app.get("/api/health")
def health_endpoint(feed_cache: FeedCache = Depends(get_feed_cache)):
    """Health check endpoint."""
    return get_health(feed_cache)

@app.get("/api/metrics")
def metrics_endpoint(feed_cache: FeedCache = Depends(get_feed_cache)):
    """Get server metrics."""
    return get_metrics(feed_cache)

# =============================================================================
# ROOT AND INFO ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Headline Aggregator",
        "version": VERSION,
        "endpoints": {
            "aggregate": "GET /api/aggregate - Aggregated headline feed",
            "health": "GET /api/health - Health check",
            "metrics": "GET /api/metrics - Server metrics"
        }
    }

# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Run the HTTP server."""
    parser = argparse.ArgumentParser(description="Headline Aggregator HTTP Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to run on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    logger.info("Server running on http://%s:%d", args.host, args.port)

    uvicorn.run(
        "http_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info"
    )

if __name__ == "__main__":
    main()
