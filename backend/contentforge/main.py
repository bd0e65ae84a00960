from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field

from .competitive import CompetitiveWriter
from .competitive_routes import CamelModel, account_id, get_services, router as competitive_router
from .config import Settings, configure_logging, settings as default_settings
from .documents import extract_text, guess_mime_type, summarize_document
from .errors import (
    ConfigurationError,
    ContentForgeError,
    GenerationInProgress,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from .exporter import export_article, record_markdown
from .generation import ContentGenerator, GenerationRequest, parse_keywords
from .jobs import JobQueue
from .llm_router import (
    CREATIVITY_TEMPERATURE,
    SUPPORTED_PROVIDERS,
    AdapterFactory,
    build_adapter,
    safe_provider_and_model,
)
from .outline import OutlineSection, outline_as_text
from .postprocess import ImageAttacher, PostProcessor, build_image_attacher
from .research import CompetitorResearch
from .storage import STATUSES, CredentialStore, RecordStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ConfigurationError: 400,
    ValidationError: 422,
    NotFoundError: 404,
    GenerationInProgress: 409,
    ProviderError: 502,
}


@dataclass
class Services:
    cfg: Settings
    store: RecordStore
    credentials: CredentialStore
    queue: JobQueue
    generator: ContentGenerator
    writer: CompetitiveWriter
    post_processor: PostProcessor
    research: CompetitorResearch


# -----------------
# Models
# -----------------


class CredentialsRequest(CamelModel):
    api_key: Optional[str] = None
    provider: str = "openai"
    model: Optional[str] = None
    creativity: str = "balanced"


class GenerateRequest(CamelModel):
    topic: str = ""
    keywords: Union[str, List[str], None] = None
    tone: str = "professional"
    language: str = "English"
    target_length: Union[int, str] = 1500
    uploaded_files: List[Dict[str, Any]] = Field(default_factory=list)
    include_images: bool = False
    seo_optimize: bool = True
    outline: Union[str, List[Dict[str, Any]], None] = None


class SeoRequest(CamelModel):
    keywords: Union[str, List[str], None] = None


class ContentUpdateRequest(CamelModel):
    title: Optional[str] = None
    content: Optional[str] = None
    keywords: Union[str, List[str], None] = None
    meta_description: Optional[str] = None
    status: Optional[str] = None


class PublishRequest(CamelModel):
    url: str
    external_id: str


class ExportRequest(CamelModel):
    formats: List[str] = Field(default_factory=lambda: ["md", "docx", "pdf"])


api = APIRouter()


@api.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# -----------------
# Account
# -----------------


@api.put("/account/credentials")
def api_save_credentials(req: CredentialsRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    provider, model = safe_provider_and_model(req.provider, req.model, cfg=services.cfg)
    if provider not in SUPPORTED_PROVIDERS:
        raise ValidationError(f"Unsupported AI provider: {req.provider}")
    creativity = (req.creativity or "balanced").strip().lower()
    if creativity not in CREATIVITY_TEMPERATURE:
        raise ValidationError(f"creativity must be one of: {', '.join(CREATIVITY_TEMPERATURE)}")
    api_key = req.api_key.strip() if req.api_key and req.api_key.strip() else None
    services.credentials.save_credentials(owner, api_key=api_key, provider=provider, model=model, creativity=creativity)
    return services.credentials.get_account(owner)


@api.get("/account")
def api_account(services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.credentials.get_account(owner)


# -----------------
# Generation
# -----------------


@api.post("/generate", status_code=202)
async def api_generate(req: GenerateRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    data = req.model_dump(by_alias=True)
    if isinstance(req.outline, list):
        sections = [OutlineSection.from_dict(s, order=i) for i, s in enumerate(req.outline)]
        data["outline"] = outline_as_text(sections)
    gen_req = GenerationRequest.from_dict(data)
    record_id = await services.generator.start_generation(owner, gen_req)
    return {"recordId": record_id, "status": "generating"}


@api.get("/generate/status/{record_id}")
def api_generation_status(record_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.generator.get_status(owner, record_id)


@api.post("/generate/{record_id}/retry", status_code=202)
async def api_retry(record_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    await services.generator.retry_generation(owner, record_id)
    return {"recordId": record_id, "status": "generating"}


# -----------------
# Contents
# -----------------


@api.get("/contents")
def api_list_contents(
    search: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    services=Depends(get_services),
    owner: str = Depends(account_id),
) -> Dict[str, Any]:
    if status and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    limit = max(1, min(int(limit), 200))
    items = services.store.list_records(owner=owner, search=search, status=status, limit=limit, offset=max(0, int(offset)))
    return {"contents": items, "limit": limit, "offset": offset}


@api.get("/contents/{record_id}")
def api_get_content(record_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    services.store.require_row(record_id, owner)
    services.store.increment_views(record_id)
    return services.store.get_record(record_id, owner)


@api.put("/contents/{record_id}")
def api_update_content(
    record_id: str, req: ContentUpdateRequest, services=Depends(get_services), owner: str = Depends(account_id)
) -> Dict[str, Any]:
    return services.store.edit_record(
        record_id,
        owner=owner,
        title=req.title,
        content=req.content,
        keywords=parse_keywords(req.keywords) if req.keywords is not None else None,
        meta_description=req.meta_description,
        status=req.status,
    )


def _require_content(services: Services, record_id: str, owner: str) -> Dict[str, Any]:
    row = services.store.require_row(record_id, owner)
    if not (row.get("content") or "").strip():
        raise ValidationError("Content has not been generated yet")
    return row


@api.post("/contents/{record_id}/seo")
def api_optimize_seo(record_id: str, req: SeoRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    _require_content(services, record_id, owner)
    report = services.post_processor.optimize_seo(record_id, parse_keywords(req.keywords) or None)
    return report.as_dict()


@api.post("/contents/{record_id}/images")
async def api_attach_images(record_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    _require_content(services, record_id, owner)
    images = await services.post_processor.attach_images(record_id)
    return {"images": images}


@api.post("/contents/{record_id}/publish")
def api_publish(record_id: str, req: PublishRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.store.mark_published(record_id, owner=owner, url=req.url, external_id=req.external_id)


@api.post("/contents/{record_id}/export")
def api_export(record_id: str, req: ExportRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    row = _require_content(services, record_id, owner)
    return export_article(
        exports_dir=services.cfg.EXPORTS_DIR,
        title=row["title"],
        markdown=record_markdown(row["title"], row["content"]),
        formats=req.formats,
    )


# -----------------
# Upload
# -----------------


@api.post("/upload")
async def api_upload(file: UploadFile = File(...), services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    data = await file.read()
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > services.cfg.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {services.cfg.MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit")

    mime = guess_mime_type(file.filename or "", file.content_type)
    text = await asyncio.to_thread(extract_text, data, mime)
    text = text[: services.cfg.REFERENCE_CONTEXT_CHARS]
    info = summarize_document(text)
    return {
        "filename": file.filename,
        "extractedText": text,
        "characterCount": len(text),
        "summary": info["summary"],
        "keywords": info["keywords"],
    }


# -----------------
# App factory
# -----------------


async def _handle_domain_error(request: Request, exc: ContentForgeError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"detail": {"code": exc.code, "message": exc.message}})


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    message = "; ".join(problems) or "Invalid request"
    return JSONResponse(status_code=422, content={"detail": {"code": ValidationError.code, "message": message}})


def create_app(
    cfg: Settings | None = None,
    *,
    adapter_factory: AdapterFactory | None = None,
    research: CompetitorResearch | None = None,
    images: ImageAttacher | None = None,
) -> FastAPI:
    cfg = cfg or default_settings
    configure_logging(cfg.LOG_LEVEL)

    factory = adapter_factory or functools.partial(build_adapter, cfg=cfg)
    store = RecordStore(cfg.DB_PATH)
    credentials = CredentialStore(cfg.DB_PATH)
    queue = JobQueue(cfg.GENERATION_WORKERS)
    research = research or CompetitorResearch(cfg)
    post_processor = PostProcessor(store, images=images or build_image_attacher(cfg))

    services = Services(
        cfg=cfg,
        store=store,
        credentials=credentials,
        queue=queue,
        generator=ContentGenerator(
            store, credentials, queue, adapter_factory=factory, post_processor=post_processor, cfg=cfg
        ),
        writer=CompetitiveWriter(credentials, queue, research=research, adapter_factory=factory, cfg=cfg),
        post_processor=post_processor,
        research=research,
    )

    app = FastAPI(title="ContentForge Backend", version="0.1.0")
    app.state.services = services

    # Restrict CORS_ORIGINS to the deployed dashboard domain in production.
    origins = [o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ContentForgeError, _handle_domain_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)

    app.include_router(api)
    app.include_router(competitive_router)

    @app.on_event("startup")
    def _startup() -> None:
        store.init_db()
        credentials.init_db()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await queue.stop()

    return app


app = create_app()
