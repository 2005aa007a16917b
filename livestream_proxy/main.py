import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from livestream_proxy.configs import settings
from livestream_proxy.handlers import ProxyRequestError
from livestream_proxy.routes import proxy_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="livestream-proxy")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProxyRequestError)
async def proxy_request_error_handler(request: Request, exc: ProxyRequestError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(proxy_router, prefix=settings.proxy_path_prefix.rstrip("/"), tags=["proxy"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
