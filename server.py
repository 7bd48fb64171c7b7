"""
Cityscope Community Stats Server
================================
FastAPI adapter over the community statistics service.

Endpoints:
- GET /api/communities/stats - Full aggregation plus rankings
- GET /api/communities/search?q=&layer= - Targeted search (max 10 results)
- GET /api/communities/{name} - One community with its rankings
- GET /api/layers/{layer}/metric - Headline metric for a map layer
- GET /api/status - Cache state of every source
"""

from contextlib import asynccontextmanager
from typing import Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from cityscope.config import EngineSettings
from cityscope.datasets import SourceName
from cityscope.query.facade import CommunityStatsService


# ============================================================================
# App Factory
# ============================================================================

def create_app(service: Optional[CommunityStatsService] = None) -> FastAPI:
    """
    Build the application around one service instance.

    The service (and therefore the feature cache) lives as long as the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """App startup and shutdown."""
        app.state.service = service or CommunityStatsService.from_settings(EngineSettings.from_env())
        logger.info(f"[Server] Cityscope starting with {app.state.service.store.fetcher!r}")
        yield
        app.state.service.store.clear()
        logger.info("[Server] Cityscope shutting down")

    app = FastAPI(title="Cityscope Community Stats", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------------

    @app.get("/api/communities/stats")
    async def community_stats(request: Request):
        """Statistics for every community, with per-metric rankings."""
        service: CommunityStatsService = request.app.state.service
        results = await service.get_full_aggregation()
        return {
            "communities": [stats.to_dict() for stats in results.values()],
            "rankings": service.get_rankings(results),
        }

    @app.get("/api/communities/search")
    async def search_communities(request: Request, q: str = "", layer: Optional[str] = None):
        """Communities matching a name or code fragment."""
        service: CommunityStatsService = request.app.state.service
        results = await service.search(q, layer)
        return {"query": q, "layer": layer, "results": [stats.to_dict() for stats in results]}

    @app.get("/api/communities/{name}")
    async def community_detail(request: Request, name: str):
        """One community by name, with its rankings."""
        service: CommunityStatsService = request.app.state.service
        community = await service.get_community_stats(name)
        if community is None:
            raise HTTPException(status_code=404, detail=f"Community not found: {name}")
        return community.to_dict()

    @app.get("/api/layers/{layer}/metric")
    async def layer_metric(request: Request, layer: str):
        """Headline metric for a map layer."""
        service: CommunityStatsService = request.app.state.service
        metric = await service.calculate_layer_metric(layer)
        if metric is None:
            raise HTTPException(status_code=404, detail=f"No metric for layer: {layer}")
        return metric.to_dict()

    @app.get("/api/status")
    async def get_status(request: Request):
        """Cache state of every known source."""
        store = request.app.state.service.store
        return {
            "sources": {
                source.value: store.source_state(source).value for source in SourceName
            }
        }

    return app


app = create_app()


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
