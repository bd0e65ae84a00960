from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .generation import parse_keywords

router = APIRouter(prefix="/competitive", tags=["competitive"])


# -----------------
# Shared dependencies
# -----------------


def get_services(request: Request):
    return request.app.state.services


def account_id(x_account_id: Optional[str] = Header(None)) -> str:
    """Authentication lives upstream; it forwards the account as X-Account-Id."""
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail={"code": "account_required", "message": "X-Account-Id header is required"})
    return x_account_id.strip()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------
# Models
# -----------------


class ResearchRequest(CamelModel):
    topic: str


class OutlineRequest(CamelModel):
    title: str
    competitors: List[Dict[str, Any]] = Field(default_factory=list)
    seo_keywords: Union[str, List[str], None] = None
    tone: str = "professional"
    target_audience: str = ""
    language: str = "English"
    words_per_section: Optional[str] = None


class SectionContext(CamelModel):
    blog_title: str = ""
    previous_sections: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    competitors: List[Dict[str, Any]] = Field(default_factory=list)


class SectionRequest(CamelModel):
    title: str
    description: str = ""
    word_count: int = 800
    tone: str = "professional"
    seo_keywords: Union[str, List[str], None] = None
    language: str = "English"
    context: SectionContext = Field(default_factory=SectionContext)


class CreateSessionRequest(OutlineRequest):
    competitors: Optional[List[Dict[str, Any]]] = None


class EditSectionRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    word_count: Optional[int] = None
    selected: Optional[bool] = None
    content: Optional[str] = None


class AddSectionRequest(CamelModel):
    title: str
    description: str = ""


class MoveSectionRequest(CamelModel):
    direction: str


class ExportRequest(CamelModel):
    formats: List[str] = Field(default_factory=lambda: ["md", "docx", "pdf"])


def _prior_titles(items: List[Union[str, Dict[str, Any]]]) -> List[str]:
    out = []
    for it in items:
        t = it.get("title") if isinstance(it, dict) else it
        if t and str(t).strip():
            out.append(str(t).strip())
    return out


# -----------------
# Stateless endpoints
# -----------------


@router.post("/research")
async def api_research(req: ResearchRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    topic = req.topic.strip()
    if not topic:
        raise ValidationError("topic is required")
    competitors = await services.research.research(topic)
    return {"topic": topic, "competitors": [c.as_dict() for c in competitors]}


@router.post("/outline")
async def api_outline(req: OutlineRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return await services.writer.outline_for(
        owner,
        title=req.title,
        competitors=req.competitors,
        seo_keywords=parse_keywords(req.seo_keywords),
        tone=req.tone,
        target_audience=req.target_audience,
        language=req.language,
        words_per_section=req.words_per_section,
    )


@router.post("/section")
async def api_section(req: SectionRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return await services.writer.section_for(
        owner,
        title=req.title,
        description=req.description,
        word_count=req.word_count,
        tone=req.tone,
        seo_keywords=parse_keywords(req.seo_keywords),
        blog_title=req.context.blog_title,
        previous_titles=_prior_titles(req.context.previous_sections),
        competitors=req.context.competitors,
        language=req.language,
    )


# -----------------
# Sessions
# -----------------


@router.post("/sessions", status_code=201)
async def api_create_session(req: CreateSessionRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    session = await services.writer.create_session(
        owner,
        title=req.title,
        tone=req.tone,
        target_audience=req.target_audience,
        seo_keywords=parse_keywords(req.seo_keywords),
        language=req.language,
        words_per_section=req.words_per_section,
        competitors=req.competitors,
    )
    return session.as_dict()


@router.get("/sessions")
def api_list_sessions(services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    sessions = services.writer.sessions.list_for(owner)
    return {
        "sessions": [
            {"id": s.id, "title": s.title, "batchStatus": s.batch_status, "progress": s.progress, "createdAt": s.created_at}
            for s in sessions
        ]
    }


@router.get("/sessions/{session_id}")
def api_get_session(session_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.writer.get_session(owner, session_id).as_dict()


@router.patch("/sessions/{session_id}/sections/{order}")
def api_edit_section(
    session_id: str, order: int, req: EditSectionRequest, services=Depends(get_services), owner: str = Depends(account_id)
) -> Dict[str, Any]:
    session = services.writer.edit_section(
        owner,
        session_id,
        order,
        title=req.title,
        description=req.description,
        word_count=req.word_count,
        selected=req.selected,
        content=req.content,
    )
    return session.as_dict()


@router.post("/sessions/{session_id}/sections", status_code=201)
def api_add_section(session_id: str, req: AddSectionRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.writer.add_section(owner, session_id, title=req.title, description=req.description).as_dict()


@router.post("/sessions/{session_id}/sections/{order}/move")
def api_move_section(
    session_id: str, order: int, req: MoveSectionRequest, services=Depends(get_services), owner: str = Depends(account_id)
) -> Dict[str, Any]:
    return services.writer.move_section(owner, session_id, order, req.direction).as_dict()


@router.post("/sessions/{session_id}/sections/{order}/generate")
async def api_generate_section(session_id: str, order: int, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    section = await services.writer.generate_section(owner, session_id, order)
    return section.as_dict()


@router.post("/sessions/{session_id}/generate-all", status_code=202)
async def api_generate_all(session_id: str, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    session = services.writer.start_generate_all(owner, session_id)
    return {"id": session.id, "batch": session.as_dict()["batch"]}


@router.post("/sessions/{session_id}/export")
def api_export_session(session_id: str, req: ExportRequest, services=Depends(get_services), owner: str = Depends(account_id)) -> Dict[str, Any]:
    return services.writer.export(owner, session_id, req.formats)
