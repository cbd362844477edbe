from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from homework_api.config import get_cors_allow_origins
from homework_api.routers import homework_router

app = FastAPI(
    title="Homework Analysis API",
    description="Homework page → routed extraction agents → canonical exercise list",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(homework_router)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    del request, exc
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Request body must be valid JSON"},
    )


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "homework-analysis-api"}
