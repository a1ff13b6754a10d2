"""
ASGI entry point: ``uvicorn leadengine.main:app``
"""
from leadengine.core.app_factory import create_app

app = create_app()
