"""
ASGI entry point for the FastAPI application.
Run with: uvicorn asgi:app
"""

from main import configure_logging, create_app
from settings import load_settings

settings = load_settings()
configure_logging(settings.log_level)

app = create_app(settings)

# Export the app for ASGI servers
application = app
