import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
import uvicorn

from .webhook import AdmissionDecoder, DecodeError, create_admission_response, process_admission_request
from .utils import get_env_or_default, get_env_int

logger = logging.getLogger("kube-plex-webhook")


def configure_logging(level: str = "INFO") -> None:
    # 配置日志
    logging.basicConfig(
        level=level.upper(),
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    cert_file: str
    key_file: str
    log_level: str


def load_settings(argv: Optional[List[str]] = None) -> Settings:
    """解析命令行参数，环境变量优先"""
    parser = argparse.ArgumentParser(description="kube-plex mutating admission webhook")
    parser.add_argument("--host", default="0.0.0.0", help="Webhook server address")
    parser.add_argument("--port", type=int, default=8443, help="Webhook server port")
    parser.add_argument("--cert", default="/etc/webhook/certs/tls.crt", help="TLS certificate file")
    parser.add_argument("--key", default="/etc/webhook/certs/tls.key", help="TLS key file")
    args = parser.parse_args(argv)

    return Settings(
        host=args.host,
        port=get_env_int("WEBHOOK_PORT", args.port),
        cert_file=get_env_or_default("TLS_CERT_FILE", args.cert),
        key_file=get_env_or_default("TLS_KEY_FILE", args.key),
        log_level=get_env_or_default("LOG_LEVEL", "INFO"),
    )


def create_app(decoder: AdmissionDecoder) -> FastAPI:
    app = FastAPI(title="kube-plex Webhook")

    @app.get("/")
    async def health():
        return {"status": "healthy"}

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz():
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    async def readyz():
        return "ok"

    @app.post("/mutate")
    async def mutate(request: Request):
        content_type = request.headers.get("content-type", "")
        if content_type.split(";")[0].strip().lower() != "application/json":
            return PlainTextResponse("invalid content type, expected application/json", status_code=415)

        body = await request.body()
        if not body:
            return PlainTextResponse("empty body", status_code=400)

        logger.info("Received admission request")
        try:
            admission_request = decoder.decode(body)
        except DecodeError as e:
            logger.error(f"Error decoding admission review: {e}")
            return JSONResponse(create_admission_response(None, allowed=False, message=str(e)))

        return JSONResponse(process_admission_request(admission_request))

    return app


app = create_app(AdmissionDecoder())


def main(argv: Optional[List[str]] = None) -> None:
    settings = load_settings(argv)
    configure_logging(settings.log_level)

    missing = [path for path in (settings.cert_file, settings.key_file) if not os.path.isfile(path)]
    for path in missing:
        logger.error(f"TLS file not found at {path}")
    if missing:
        sys.exit(1)

    logger.info(f"Starting kube-plex webhook server on port {settings.port}")
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        ssl_certfile=settings.cert_file,
        ssl_keyfile=settings.key_file,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
