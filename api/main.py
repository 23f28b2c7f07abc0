import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.uploads import UploadHandler
from common.config import LOG_LEVEL, PORT
from common.errors import BoothError
from common.storage import BlobStore
from common.stylizer import Stylizer, to_data_url
from worker.worker import TransformQueue

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def get_handler(request: Request) -> UploadHandler:
    return request.app.state.handler


async def _read_photo(photo: Optional[UploadFile]) -> bytes:
    if photo is None:
        return b""
    return await photo.read()


# ---------- API endpoints ----------

@router.post("/upload")
async def upload(
    name: str = Form(""),
    photo: Optional[UploadFile] = File(None),
    handler: UploadHandler = Depends(get_handler),
):
    result = await handler.handle_upload(name, await _read_photo(photo))
    return JSONResponse(result.model_dump(mode="json", exclude_none=True), status_code=result.http_status)


@router.post("/jobs", status_code=202)
async def create_job(
    name: str = Form(""),
    photo: Optional[UploadFile] = File(None),
    handler: UploadHandler = Depends(get_handler),
):
    job = await handler.submit_upload(name, await _read_photo(photo))
    return {"ok": True, "job_id": job.id, "status": job.state, "user": job.nickname}


@router.get("/status/{job_id}")
async def read_status(job_id: str, handler: UploadHandler = Depends(get_handler)):
    status = handler.get_status(job_id)
    if not status.done:
        return {"done": False}
    body = status.model_dump(exclude_none=True)
    if status.result is not None:
        body["image"] = to_data_url(status.result, status.content_type or "image/png")
    return body


@router.get("/jobs/{job_id}/result")
async def read_result(job_id: str, handler: UploadHandler = Depends(get_handler)):
    image, content_type = await handler.pickup(job_id)
    return Response(content=image, media_type=content_type)


@router.get("/health")
async def health(request: Request):
    handler: UploadHandler = request.app.state.handler
    running = handler.queue.running_job()
    return {
        "ok": True,
        "storage_backend": handler.store.backend,
        "queued": handler.queue.pending_count(),
        "running": running.id if running else None,
    }


async def booth_error_handler(request: Request, exc: BoothError):
    return JSONResponse(
        {"ok": False, "error": exc.kind.value, "message": exc.user_message, "detail": str(exc)},
        status_code=exc.status_code,
    )


def create_app(
    store: Optional[BlobStore] = None,
    stylizer: Optional[Stylizer] = None,
    queue: Optional[TransformQueue] = None,
) -> FastAPI:
    configure_logging()
    store = store or BlobStore()
    if queue is None:
        queue = TransformQueue(stylizer or Stylizer())
    handler = UploadHandler(store, queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for name in store.missing_settings():
            logger.error("%s env var is missing", name)
        if not getattr(queue.transformer, "api_key", True):
            logger.error("OPENAI_API_KEY env var is missing")
        logger.info("Booth API ready (storage=%s)", store.backend)
        yield
        await handler.drain()

    app = FastAPI(title="Photo Booth Stylizer API", lifespan=lifespan)
    app.state.handler = handler
    # the booth front-end is served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(BoothError, booth_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
