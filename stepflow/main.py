from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from stepflow import __version__
from stepflow.api.routes import router, status_for
from stepflow.config import get_settings
from stepflow.engine.errors import StepflowError

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Stepflow API",
    description="Compiles node/edge workflow definitions into ordered pipelines and executes them",
    version=__version__
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api/v1")


@app.exception_handler(StepflowError)
async def stepflow_error_handler(request: Request, exc: StepflowError):
    """Engine errors become {error, code, details} with a status matching the error class"""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Stepflow API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "save_workflow": "POST /api/v1/workflows",
            "list_workflows": "GET /api/v1/workflows",
            "get_workflow": "GET /api/v1/workflows/{workflow_id}",
            "delete_workflow": "DELETE /api/v1/workflows/{workflow_id}",
            "validate": "POST /api/v1/workflows/{workflow_id}/validate",
            "generate": "POST /api/v1/workflows/{workflow_id}/generate",
            "execute": "POST /api/v1/workflows/{workflow_id}/execute",
            "stream": "WS /api/v1/ws/workflows/{workflow_id}/execute",
            "get_run": "GET /api/v1/runs/{run_id}",
            "cancel_run": "POST /api/v1/runs/{run_id}/cancel",
            "list_tools": "GET /api/v1/tools",
            "memory_stats": "GET /api/v1/memory/stats",
            "memory_cleanup": "POST /api/v1/memory/cleanup"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


def run():
    """Console entry point"""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
