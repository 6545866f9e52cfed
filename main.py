"""Main entry point for running the FastAPI application with auto-reload."""
import uvicorn

from tenderflow.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Extraction service: {settings.service.base_url}")
    print(f"Auto-reload: {'Enabled' if settings.debug else 'Disabled'}")
    print("-" * 50)

    uvicorn.run(
        "tenderflow.api:app",
        host="0.0.0.0",
        port=8080,
        reload=settings.debug,
        reload_dirs=["tenderflow"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
