"""HTTP trigger surface.

Routes:
    GET|POST /processVotes   run one tally pass (200 on success, 500 on failure)
    GET      /news           latest tally summaries
    GET      /stats          marker, vote, and news counts
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from tentmap import __version__
from tentmap.config import Settings
from tentmap.service import TentMapService
from tentmap.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[TentMapService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the FastAPI app around a service (or one built from settings)."""
    if service is None:
        service = TentMapService.from_settings(settings or Settings.from_config_dir())

    app = FastAPI(title="tentmap vote processing", version=__version__)

    @app.api_route("/processVotes", methods=["GET", "POST"])
    def process_votes() -> JSONResponse:
        logger.info("Starting timed votes processing...")
        try:
            result = service.process_votes()
        except Exception as e:
            logger.exception("Error processing votes")
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": str(e),
                    "timestamp": to_iso(utc_now()),
                },
            )
        status_code = 200 if result.success else 500
        return JSONResponse(status_code=status_code, content=result.data)

    @app.get("/news")
    def news(limit: int = Query(5, ge=1, le=100)) -> list[dict]:
        return [record.to_dict() for record in service.list_news(limit)]

    @app.get("/stats")
    def stats() -> dict:
        return service.stats()

    return app
