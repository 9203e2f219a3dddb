from livesurvey.api.ws.routes import router

__all__ = ["router"]
