from homework_api.routers.homework import router as homework_router

__all__ = ["homework_router"]
