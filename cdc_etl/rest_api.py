"""
rest_api.py - Administrative REST API for the CDC ETL pipeline
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

from fastapi import FastAPI, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cdc_etl.cdc.models import ChangeNotification, OperationType
from cdc_etl.config import PipelineConfig, get_config
from cdc_etl.pipeline import ETLPipeline
from cdc_etl.security import get_api_key

logger = logging.getLogger(__name__)


class ChangeNotificationRequest(BaseModel):
    """A change notification pushed by an external source"""
    operationType: str
    documentKey: Any
    fullDocument: Optional[Dict[str, Any]] = None
    updateDescription: Optional[Dict[str, Any]] = None


class APIResponse(BaseModel):
    """Base API response model"""
    status: str
    data: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message})


class CDCPipelineAPI:
    """REST surface over a running pipeline"""

    def __init__(self, pipeline: ETLPipeline, manage_lifecycle: bool = True):
        self.pipeline = pipeline
        lifespan = self._lifespan if manage_lifecycle else None
        self.app = FastAPI(title="CDC ETL Pipeline API", lifespan=lifespan)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.pipeline.start()
        try:
            yield
        finally:
            await self.pipeline.stop()

    def _setup_routes(self):
        """Setup all API routes"""

        @self.app.get("/health")
        async def health_check():
            try:
                return await self.pipeline.health()
            except Exception as e:
                logger.error("Health check failed: %s", e)
                return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))

        @self.app.get("/warehouse/status", dependencies=[Depends(get_api_key)])
        async def warehouse_status():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.pipeline.writer.get_status)

        @self.app.get("/warehouse/{collection}", dependencies=[Depends(get_api_key)])
        async def latest_records(collection: str, limit: int = Query(10, ge=0, le=1000)):
            loop = asyncio.get_running_loop()
            rows = await loop.run_in_executor(None, self.pipeline.writer.get_latest, collection, limit)
            return APIResponse(status="success", data=rows, metadata={"collection": collection, "count": len(rows)})

        @self.app.get("/cdc/status", dependencies=[Depends(get_api_key)])
        async def cdc_status():
            try:
                return APIResponse(status="success", data=await self.pipeline.cdc_status())
            except Exception as e:
                logger.error("Error getting CDC status: %s", e)
                return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

        @self.app.post("/cdc/{collection}/changes", dependencies=[Depends(get_api_key)])
        async def push_change(collection: str, request: ChangeNotificationRequest):
            if not self.pipeline.supports_push:
                return error_response(status.HTTP_409_CONFLICT,
                                      "Source store does not accept pushed changes")
            if request.operationType.lower() not in {op.value for op in OperationType}:
                return error_response(status.HTTP_400_BAD_REQUEST,
                                      f"Unknown operation type: {request.operationType}")

            notification = ChangeNotification(
                operation_type=request.operationType.lower(),
                document_key=request.documentKey,
                full_document=request.fullDocument,
                update_description=request.updateDescription,
            )
            try:
                await self.pipeline.push_change(collection, notification)
            except ValueError as e:
                return error_response(status.HTTP_404_NOT_FOUND, str(e))
            except Exception as e:
                logger.error("Error pushing change for %s: %s", collection, e)
                return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
            return APIResponse(status="accepted", data={"collection": collection})

    def get_app(self) -> FastAPI:
        """Get the FastAPI application instance"""
        return self.app


def create_api(config: Optional[PipelineConfig] = None,
               pipeline: Optional[ETLPipeline] = None,
               manage_lifecycle: bool = True) -> CDCPipelineAPI:
    """Create the API around a pipeline built from configuration"""
    pipeline = pipeline or ETLPipeline(config or get_config())
    return CDCPipelineAPI(pipeline, manage_lifecycle=manage_lifecycle)
