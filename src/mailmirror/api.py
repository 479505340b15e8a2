"""HTTP API over a running mirror.

Read-mostly views of accounts, threads and search, local flag edits with a
short undo history, and the two recovery actions (resume after
re-authentication, rebuild after repeated storage failures). Presentation
lives elsewhere; this is a thin JSON surface.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from mailmirror import __version__
from mailmirror.models import Account, Email, LocalMutation, Thread
from mailmirror.runtime import MailMirror
from mailmirror.search import SearchMode, SearchQuery, build_filter
from mailmirror.sync import UndoableEdit

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    accounts: int
    emails: int
    pending_changes: int
    semantic_search: bool


class RebuildResponse(BaseModel):
    account_id: str
    removed_emails: int


class EmailSummary(BaseModel):
    id: str
    account_id: str
    thread_id: str
    subject: str
    sender: str
    sent_at: datetime
    is_read: bool
    is_starred: bool
    labels: list[str]

    @classmethod
    def from_email(cls, email: Email) -> "EmailSummary":
        return cls(
            id=email.id,
            account_id=email.account_id,
            thread_id=email.thread_id,
            subject=email.content.subject,
            sender=email.content.sender,
            sent_at=email.content.sent_at,
            is_read=email.is_read,
            is_starred=email.is_starred,
            labels=email.labels,
        )


class ThreadResponse(BaseModel):
    thread: Thread
    emails: list[EmailSummary]


class SearchHitResponse(BaseModel):
    email_id: str
    score: float
    source: str
    snippet: str
    email: EmailSummary | None = None


class SearchResponse(BaseModel):
    query: str
    mode: SearchMode
    total: int
    limit: int
    offset: int
    took_ms: float
    used_semantic: bool
    hits: list[SearchHitResponse]


class FlagUpdate(BaseModel):
    field: str
    value: bool


class EditResponse(BaseModel):
    id: str
    account_id: str
    email_id: str
    field: str
    value: bool
    previous: bool
    description: str
    undo_seconds_remaining: float

    @classmethod
    def from_edit(cls, edit: UndoableEdit, remaining: float) -> "EditResponse":
        return cls(
            id=edit.id,
            account_id=edit.account_id,
            email_id=edit.email_id,
            field=edit.field,
            value=edit.value,
            previous=edit.previous,
            description=edit.description,
            undo_seconds_remaining=remaining,
        )


def _mirror(request: Request) -> MailMirror:
    return request.app.state.mirror


def _account_or_404(mirror: MailMirror, account_id: str) -> Account:
    account = mirror.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Unknown account: {account_id}")
    return account


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    mirror = _mirror(request)
    return HealthResponse(
        status="ok",
        version=__version__,
        accounts=len(mirror.store.list_accounts()),
        emails=mirror.store.count_emails(),
        pending_changes=mirror.store.pending_change_count(),
        semantic_search=mirror.search.semantic_available,
    )


@router.get("/accounts", response_model=list[Account])
def list_accounts(request: Request) -> list[Account]:
    return _mirror(request).store.list_accounts()


@router.get("/accounts/{account_id}", response_model=Account)
def get_account(account_id: str, request: Request) -> Account:
    return _account_or_404(_mirror(request), account_id)


@router.get("/accounts/{account_id}/failed-mutations", response_model=list[LocalMutation])
def failed_mutations(account_id: str, request: Request) -> list[LocalMutation]:
    mirror = _mirror(request)
    _account_or_404(mirror, account_id)
    return mirror.store.list_failed_mutations(account_id)


@router.post("/accounts/{account_id}/resume", response_model=Account)
def resume_account(account_id: str, request: Request) -> Account:
    mirror = _mirror(request)
    _account_or_404(mirror, account_id)
    return mirror.resume_account(account_id)


@router.post("/accounts/{account_id}/rebuild", response_model=RebuildResponse)
async def rebuild_account(account_id: str, request: Request) -> RebuildResponse:
    mirror = _mirror(request)
    _account_or_404(mirror, account_id)
    removed = await mirror.rebuild_account(account_id)
    return RebuildResponse(account_id=account_id, removed_emails=removed)


@router.get("/threads/{thread_id}", response_model=ThreadResponse)
def get_thread(thread_id: str, request: Request) -> ThreadResponse:
    mirror = _mirror(request)
    thread = mirror.store.get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Unknown thread: {thread_id}")
    emails = mirror.store.thread_emails(thread_id)
    return ThreadResponse(thread=thread, emails=[EmailSummary.from_email(e) for e in emails])


@router.get("/emails/{email_id}", response_model=EmailSummary)
def get_email(email_id: str, request: Request) -> EmailSummary:
    email = _mirror(request).store.get_email(email_id)
    if email is None:
        raise HTTPException(status_code=404, detail=f"Unknown email: {email_id}")
    return EmailSummary.from_email(email)


@router.post("/emails/{email_id}/flags", response_model=EditResponse)
def set_flag(email_id: str, update: FlagUpdate, request: Request) -> EditResponse:
    mirror = _mirror(request)
    try:
        edit = mirror.set_flag(email_id, update.field, update.value)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown email: {email_id}") from None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return EditResponse.from_edit(edit, mirror.undo_history.time_remaining(edit))


@router.get("/undo", response_model=list[EditResponse])
def undo_history(
    request: Request, limit: int = Query(default=10, ge=1, le=100)
) -> list[EditResponse]:
    history = _mirror(request).undo_history
    return [EditResponse.from_edit(e, history.time_remaining(e)) for e in history.recent(limit)]


@router.post("/undo", response_model=EditResponse)
def undo(request: Request) -> EditResponse:
    try:
        edit = _mirror(request).undo()
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if edit is None:
        raise HTTPException(status_code=404, detail="Nothing to undo")
    return EditResponse.from_edit(edit, 0.0)


@router.get("/search", response_model=SearchResponse)
async def search(
    request: Request,
    q: str = Query(..., min_length=1),
    mode: SearchMode = SearchMode.HYBRID,
    account: list[str] | None = Query(default=None),
    folder: str | None = None,
    after: datetime | None = None,
    before: datetime | None = None,
    sender: str | None = None,
    recipient: str | None = None,
    unread: bool | None = None,
    starred: bool | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> SearchResponse:
    mirror = _mirror(request)
    email_filter = build_filter(
        accounts=account,
        folder=folder,
        after=after,
        before=before,
        sender=sender,
        recipient=recipient,
        unread=unread,
        starred=starred,
    )
    results = await mirror.search.search(
        SearchQuery(text=q, mode=mode, filter=email_filter, limit=limit, offset=offset)
    )
    return SearchResponse(
        query=q,
        mode=mode,
        total=results.total,
        limit=limit,
        offset=offset,
        took_ms=results.took_ms,
        used_semantic=results.used_semantic,
        hits=[
            SearchHitResponse(
                email_id=h.email_id,
                score=h.score,
                source=h.source.value,
                snippet=h.snippet,
                email=EmailSummary.from_email(h.email) if h.email is not None else None,
            )
            for h in results.hits
        ],
    )


@router.get("/search/suggest", response_model=list[str])
def suggest(request: Request, prefix: str = "", limit: int = Query(default=10, ge=1, le=100)) -> list[str]:
    return _mirror(request).search.suggest(prefix, limit=limit)


def create_app(mirror: MailMirror, *, run_background: bool = False) -> FastAPI:
    """Create the FastAPI application for ``mirror``.

    With ``run_background`` the sync scheduler, change feed and indexer run
    for the lifetime of the app.
    """

    app = FastAPI(title="mailmirror", version=__version__)
    app.state.mirror = mirror
    app.include_router(router)

    if run_background:

        @app.on_event("startup")
        async def _startup() -> None:
            await mirror.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await mirror.stop()

    return app
