import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect

from libdesk import __version__
from libdesk.accounts import Accounts
from libdesk.assistant.openrouter_service import OpenRouterService, system_instructions
from libdesk.assistant.tool_catalog import ALL_TOOLS, get_tool
from libdesk.assistant.tool_selection import (
    CommandSuggester,
    SelectionConfig,
    UserLevel,
    analyze_execution_context,
    cache_stats,
    categories_for_level,
    clear_caches,
    create_selection_summary,
    get_tool_usage_stats,
    select_tools,
)
from libdesk.circulation import Circulation
from libdesk.config import settings
from libdesk.database import get_db_connection
from libdesk.dialog_history import DialogHistory
from libdesk.errors import ExternalServiceError, RateLimitExceeded
from libdesk.journals import Journals
from libdesk.library import Library
from libdesk.notifications import Notification, NotificationCenter
from libdesk.reservation import get_status_info
from libdesk.services.cache_manager import cache_manager
from libdesk.services.covers import DEFAULT_COVER_SVG, fetch_cover, save_cover
from libdesk.services.http_client import cleanup_http_client, get_http_client
from libdesk.services.mailer import Mailer
from libdesk.services.notification_hub import hub
from libdesk.shelves import ShelfLayout

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

library = Library()
shelves = ShelfLayout()
journals = Journals()
accounts = Accounts()
mailer = Mailer()
notification_center = NotificationCenter(mailer=mailer)
circulation = Circulation(library=library, notifications=notification_center)
dialog_history = DialogHistory()
assistant = OpenRouterService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_http_client()
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "Link"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith(("/covers/", "/api/covers/")):
        response.headers["Cache-Control"] = "public, max-age=86400"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    return response


# --- Error mapping ---
@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(LookupError)
async def lookup_error_handler(request: Request, exc: LookupError):
    return JSONResponse(status_code=404, content={"detail": str(exc).strip("'\"")})


@app.exception_handler(PermissionError)
async def permission_error_handler(request: Request, exc: PermissionError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": str(exc)})


@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """Validate the X-API-Key header when it is sent."""
    if api_key is None:
        return None
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_principal(api_key: Optional[str] = Depends(get_api_key),
                  credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> Dict[str, Any]:
    """The caller: token claims of a signed-in user, or the admin behind the API key."""
    if api_key:
        return {"sub": None, "roles": ["admin"], "api_key": True}
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    try:
        return accounts.decode_token(credentials.credentials)
    except PermissionError as e:
        raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"}) from e


def _is_staff(principal: Dict[str, Any]) -> bool:
    return bool(set(principal.get("roles") or []) & set(settings.staff_roles))


def require_staff(principal: Dict[str, Any] = Depends(get_principal)) -> Dict[str, Any]:
    if not _is_staff(principal):
        raise HTTPException(status_code=403, detail="Staff role required")
    return principal


def _ensure_self_or_staff(principal: Dict[str, Any], user_id: str) -> None:
    if principal.get("sub") != user_id and not _is_staff(principal):
        raise PermissionError("You can only access your own account.")


# --- Helpers ---
def invalidate_cache(prefix: str) -> int:
    return cache_manager.invalidate_pattern(f"{prefix}*")


def _paginate(request: Request, response: Response, total: int, limit: int, offset: int) -> None:
    """Set X-Total-Count and Link headers for offset pagination."""
    response.headers["X-Total-Count"] = str(total)
    links = []
    if offset > 0:
        links.append(f'<{request.url.include_query_params(offset=max(0, offset - limit), limit=limit)}>; rel="prev"')
    if offset + limit < total:
        links.append(f'<{request.url.include_query_params(offset=offset + limit, limit=limit)}>; rel="next"')
    links.append(f'<{request.url.include_query_params(offset=0, limit=limit)}>; rel="first"')
    last_offset = max(0, ((total - 1) // limit) * limit) if total else 0
    links.append(f'<{request.url.include_query_params(offset=last_offset, limit=limit)}>; rel="last"')
    response.headers["Link"] = ", ".join(links)


async def _publish(notifications: List[Notification]) -> None:
    """Push freshly created notifications and the new unread count to connected readers."""
    for notification in notifications:
        if not hub.is_connected(notification.user_id):
            continue
        await hub.push(notification.user_id, {"type": "notification", "data": notification.to_dict()})
        await hub.push(notification.user_id, {
            "type": "unread_count",
            "data": notification_center.unread_count(notification.user_id),
        })


async def _publish_circulation() -> None:
    await _publish(circulation.drain_notifications())


def _require(value, message: str):
    if value is None:
        raise LookupError(message)
    return value


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    authors: str
    isbn: str | None = None
    genre: str | None = None
    categorization: str | None = None
    udk: str | None = None
    bbk: str | None = None
    edition: str | None = None
    description: str | None = None
    publication_year: int | None = None
    publisher: str | None = None
    page_count: int | None = None
    language: str | None = None
    cover: str | None = None
    available_copies: int = 0
    shelf_id: int | None = None
    position: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    authors: str
    isbn: str | None = None
    genre: str | None = None
    categorization: str | None = None
    udk: str | None = None
    bbk: str | None = None
    edition: str | None = None
    description: str | None = None
    publication_year: int | None = None
    publisher: str | None = None
    page_count: int | None = None
    language: str | None = None
    available_copies: int = 0


class BookUpdateModel(BaseModel):
    title: str | None = None
    authors: str | None = None
    isbn: str | None = None
    genre: str | None = None
    categorization: str | None = None
    udk: str | None = None
    bbk: str | None = None
    edition: str | None = None
    description: str | None = None
    publication_year: int | None = None
    publisher: str | None = None
    page_count: int | None = None
    language: str | None = None
    available_copies: int | None = None


class GenreModel(BaseModel):
    genre: str


class CategorizationModel(BaseModel):
    categorization: str


class PositionModel(BaseModel):
    shelf_id: int
    position: int = Field(ge=1)


class InstanceCreateModel(BaseModel):
    instance_code: str | None = None
    status: str = "available"
    condition: str = "good"
    location: str | None = None
    purchase_price: float | None = None
    date_acquired: str | None = None
    notes: str | None = None
    shelf_id: int | None = None
    position: int | None = None


class InstanceUpdateModel(BaseModel):
    instance_code: str | None = None
    status: str | None = None
    condition: str | None = None
    location: str | None = None
    purchase_price: float | None = None
    date_acquired: str | None = None
    notes: str | None = None
    shelf_id: int | None = None
    position: int | None = None
    is_active: bool | None = None


class StatusModel(BaseModel):
    status: str


class MultipleInstancesModel(BaseModel):
    count: int = Field(ge=1, le=100)
    condition: str = "good"
    location: str | None = None


class BulkInstancesModel(BaseModel):
    items: List[Dict[str, Any]]


class BulkInstanceStatusModel(BaseModel):
    instance_ids: List[str]
    status: str


class ShelfCreateModel(BaseModel):
    category: str
    capacity: int = Field(ge=1)
    shelf_number: int
    pos_x: int | None = None
    pos_y: int | None = None


class ShelfUpdateModel(BaseModel):
    category: str | None = None
    capacity: int | None = None
    shelf_number: int | None = None
    pos_x: int | None = None
    pos_y: int | None = None


class MoveModel(BaseModel):
    pos_x: int
    pos_y: int


class ArrangeModel(BaseModel):
    book_ids: List[str] | None = None
    dry_run: bool = False


class JournalModel(BaseModel):
    title: str = Field(max_length=200)
    issn: str | None = Field(None, max_length=20)
    registration_number: str | None = Field(None, max_length=50)
    format: str = "Print"
    periodicity: str = "Monthly"
    pages_per_issue: int = Field(0, ge=0)
    description: str | None = Field(None, max_length=500)
    publisher: str | None = Field(None, max_length=100)
    foundation_date: str | None = None
    circulation: int = Field(0, ge=0)
    is_open_access: bool = False
    category: str = "Scientific"
    target_audience: str | None = Field(None, max_length=100)
    is_peer_reviewed: bool = False
    is_indexed_in_rints: bool = False
    is_indexed_in_scopus: bool = False
    is_indexed_in_web_of_science: bool = False
    cover: str | None = None


class JournalUpdateModel(BaseModel):
    title: str | None = Field(None, max_length=200)
    issn: str | None = None
    registration_number: str | None = None
    format: str | None = None
    periodicity: str | None = None
    pages_per_issue: int | None = Field(None, ge=0)
    description: str | None = None
    publisher: str | None = None
    foundation_date: str | None = None
    circulation: int | None = Field(None, ge=0)
    is_open_access: bool | None = None
    category: str | None = None
    target_audience: str | None = None
    is_peer_reviewed: bool | None = None
    is_indexed_in_rints: bool | None = None
    is_indexed_in_scopus: bool | None = None
    is_indexed_in_web_of_science: bool | None = None
    cover: str | None = None


class IssueModel(BaseModel):
    journal_id: int
    volume_number: int
    issue_number: int
    publication_date: str
    page_count: int
    cover: str | None = None
    circulation: int | None = None
    special_theme: str | None = None
    shelf_id: int | None = None
    position: int | None = None


class IssueUpdateModel(BaseModel):
    volume_number: int | None = None
    issue_number: int | None = None
    publication_date: str | None = None
    page_count: int | None = None
    cover: str | None = None
    circulation: int | None = None
    special_theme: str | None = None
    shelf_id: int | None = None
    position: int | None = None


class ArticleModel(BaseModel):
    issue_id: int
    title: str
    authors: List[str]
    start_page: int
    end_page: int
    abstract: str | None = None
    keywords: List[str] | None = None
    doi: str | None = None
    type: str = "Research"
    full_text: str | None = None


class ArticleUpdateModel(BaseModel):
    title: str | None = None
    authors: List[str] | None = None
    start_page: int | None = None
    end_page: int | None = None
    abstract: str | None = None
    keywords: List[str] | None = None
    doi: str | None = None
    type: str | None = None
    full_text: str | None = None


class LoginModel(BaseModel):
    email: str
    password: str


class RegisterModel(BaseModel):
    full_name: str
    email: str
    password: str
    phone: str | None = None


class UserCreateModel(RegisterModel):
    roles: List[str] | None = None
    max_books_allowed: int | None = None
    loan_period_days: int | None = None


class UserUpdateModel(BaseModel):
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    max_books_allowed: int | None = None
    loan_period_days: int | None = None
    is_active: bool | None = None


class ActiveModel(BaseModel):
    is_active: bool


class PasswordChangeModel(BaseModel):
    old_password: str
    new_password: str


class RoleModel(BaseModel):
    name: str
    description: str | None = None


class RoleUpdateModel(BaseModel):
    name: str | None = None
    description: str | None = None


class UserRoleModel(BaseModel):
    role_id: int


class UserIdsModel(BaseModel):
    user_ids: List[str]


class ReservationCreateModel(BaseModel):
    user_id: str
    book_id: str
    reservation_date: str | None = None
    expiration_date: str | None = None
    notes: str | None = None


class ReservationUpdateModel(BaseModel):
    status: str | None = None
    notes: str | None = None
    reservation_date: str | None = None
    expiration_date: str | None = None


class BulkReservationModel(BaseModel):
    reservation_ids: List[str]
    status: str


class QueueJoinModel(BaseModel):
    user_id: str


class FineCreateModel(BaseModel):
    user_id: str
    amount: float | None = None
    reason: str | None = None
    fine_type: str = "Other"
    notes: str | None = None
    reservation_id: str | None = None
    overdue_days: int | None = None


class NotificationCreateModel(BaseModel):
    user_id: str
    title: str
    message: str
    type: str = "GeneralInfo"
    priority: str = "Normal"
    book_id: str | None = None
    reservation_id: str | None = None


class BulkNotificationModel(BaseModel):
    user_ids: List[str]
    title: str
    message: str
    type: str = "GeneralInfo"
    priority: str = "Normal"


class MarkReadModel(BaseModel):
    notification_ids: List[str]


class EmailModel(BaseModel):
    user_id: str
    subject: str
    body: str


class TemplateEmailModel(BaseModel):
    user_id: str
    template: str
    context: Dict[str, Any] = Field(default_factory=dict)


class DialogMessageModel(BaseModel):
    conversation_id: str
    role: str
    content: str
    tool_name: str | None = None


class HistoryMessageModel(BaseModel):
    role: str
    content: str | None = None
    api_call: Dict[str, Any] | None = None


class ToolSelectionRequest(BaseModel):
    query: str
    user_level: int = Field(default=UserLevel.INTERMEDIATE, ge=1, le=3)
    history: List[HistoryMessageModel] = Field(default_factory=list)
    iteration: int = 0
    preferred_categories: List[str] = Field(default_factory=list)
    excluded_categories: List[str] = Field(default_factory=list)
    append_to_existing: bool = False
    existing_tools: List[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str
    conversation_id: str | None = None
    user_level: int = Field(default=UserLevel.INTERMEDIATE, ge=1, le=3)
    history: List[HistoryMessageModel] = Field(default_factory=list)
    model: str | None = None


# --- Health & statistics ---
@app.get("/health")
@app.get("/api/health")
def health():
    """Liveness check with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.warning("Health check database error: %s", e)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "db": db_ok,
        "total_books": library.count_books(),
        "services": {
            "redis": cache_manager.redis_client is not None,
            "assistant": assistant.available,
            "email": mailer.enabled,
        },
        "live_connections": hub.connection_count(),
    }


@app.get("/api/stats", dependencies=[Depends(require_staff)])
def dashboard_stats():
    """Numbers for the admin dashboard."""
    cached = cache_manager.get("stats:dashboard")
    if cached is not None:
        return cached
    result = {
        "books": library.get_book_statistics(),
        "users": accounts.get_user_statistics(),
        "reservations": circulation.get_reservation_statistics(),
        "notifications": notification_center.admin_stats(),
        "journals": journals.get_statistics(),
    }
    cache_manager.set("stats:dashboard", result, ttl_seconds=60)
    return result


# --- Auth ---
@app.post("/api/auth/login")
def login(payload: LoginModel):
    try:
        user = accounts.authenticate(payload.email, payload.password)
    except PermissionError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    return {
        "access_token": accounts.issue_token(user),
        "token_type": "bearer",
        "must_change_password": user.must_change_password,
        "user": user.to_dict(),
    }


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterModel):
    user = accounts.create_user(payload.full_name, payload.email, payload.password, phone=payload.phone)
    mailer.send_template(user.email, "welcome", name=user.full_name, email=user.email)
    return user.to_dict()


@app.get("/api/auth/me")
def me(principal: Dict[str, Any] = Depends(get_principal)):
    if not principal.get("sub"):
        return {"id": None, "roles": principal.get("roles", []), "api_key": True}
    return _require(accounts.get_user(principal["sub"]), "User not found.").to_dict()


@app.post("/api/auth/change-password", status_code=204)
def change_own_password(payload: PasswordChangeModel, principal: Dict[str, Any] = Depends(get_principal)):
    if not principal.get("sub"):
        raise HTTPException(status_code=400, detail="API key callers have no password.")
    accounts.change_password(principal["sub"], payload.old_password, payload.new_password)
    return Response(status_code=204)


# --- Books ---
@app.get("/api/books", response_model=List[BookModel])
def get_books(
    request: Request,
    response: Response,
    q: Optional[str] = Query(None, description="Search text"),
    genre: Optional[str] = Query(None),
    sort_by: str = Query("title", description="title|authors|publication_year|created_at|available_copies|genre"),
    order: str = Query("asc", pattern="^(asc|desc)$"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    """Catalog page with search, genre filter, sorting and offset pagination."""
    total = library.count_books(q, genre)
    _paginate(request, response, total, limit, offset)
    cache_key = f"books:{q}:{genre}:{sort_by}:{order}:{limit}:{offset}"
    cached = cache_manager.get(cache_key)
    if cached is not None:
        return cached
    result = [b.to_dict() for b in library.list_books(q, genre, sort_by, order, limit, offset)]
    cache_manager.set(cache_key, result, ttl_seconds=60)
    return result


@app.get("/api/books/search", response_model=List[BookModel])
def search_books(q: str = Query(..., min_length=1)):
    return [b.to_dict() for b in library.search_books(q)]


@app.get("/api/books/statistics")
def book_statistics():
    cached = cache_manager.get("books:statistics")
    if cached is not None:
        return cached
    result = library.get_book_statistics()
    cache_manager.set("books:statistics", result, ttl_seconds=60)
    return result


@app.get("/api/books/top-popular")
def top_popular_books(limit: int = Query(10, ge=1, le=100)):
    return library.get_top_popular_books(limit)


@app.post("/api/books", response_model=BookModel, status_code=201, dependencies=[Depends(require_staff)])
def add_book(payload: BookCreateModel):
    fields = payload.model_dump(exclude_none=True)
    book = library.create_book(fields.pop("title"), fields.pop("authors"), **fields)
    invalidate_cache("books")
    return book.to_dict()


@app.post("/api/books/import/{isbn}", response_model=BookModel, status_code=201,
          dependencies=[Depends(require_staff)])
def import_book(isbn: str):
    """Create a book from Open Library metadata."""
    book = library.import_by_isbn(isbn)
    invalidate_cache("books")
    return book.to_dict()


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    return _require(library.get_book(book_id), "Book not found.").to_dict()


@app.put("/api/books/{book_id}", response_model=BookModel, dependencies=[Depends(require_staff)])
def update_book(book_id: str, payload: BookUpdateModel):
    book = library.update_book(book_id, **payload.model_dump(exclude_none=True))
    invalidate_cache("books")
    return book.to_dict()


@app.delete("/api/books/{book_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_book(book_id: str):
    if not library.delete_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    invalidate_cache("books")
    return Response(status_code=204)


@app.put("/api/books/{book_id}/genre", response_model=BookModel, dependencies=[Depends(require_staff)])
def update_book_genre(book_id: str, payload: GenreModel):
    book = library.update_genre(book_id, payload.genre)
    invalidate_cache("books")
    return book.to_dict()


@app.put("/api/books/{book_id}/categorization", response_model=BookModel, dependencies=[Depends(require_staff)])
def update_book_categorization(book_id: str, payload: CategorizationModel):
    book = library.update_categorization(book_id, payload.categorization)
    invalidate_cache("books")
    return book.to_dict()


@app.put("/api/books/{book_id}/position", response_model=BookModel, dependencies=[Depends(require_staff)])
def set_book_position(book_id: str, payload: PositionModel):
    return library.set_position(book_id, payload.shelf_id, payload.position).to_dict()


@app.delete("/api/books/{book_id}/position", response_model=BookModel, dependencies=[Depends(require_staff)])
def clear_book_position(book_id: str):
    return library.clear_position(book_id).to_dict()


@app.get("/api/books/{book_id}/availability")
def book_availability(book_id: str):
    return library.get_availability(book_id)


@app.get("/api/books/{book_id}/best-instance", dependencies=[Depends(require_staff)])
def best_available_instance(book_id: str):
    _require(library.get_book(book_id), "Book not found.")
    instance = library.get_best_available_instance(book_id)
    return instance.to_dict() if instance else None


@app.get("/api/books/{book_id}/reservation-dates")
def book_reservation_dates(book_id: str):
    """Busy periods of one book for the reservation calendar."""
    _require(library.get_book(book_id), "Book not found.")
    return circulation.get_reservation_dates(book_id)


@app.get("/api/books/{book_id}/access")
def book_shelf_access(book_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    """Whether the caller may see where the book stands on the shelves."""
    book = _require(library.get_book(book_id), "Book not found.")
    allowed = _is_staff(principal) or circulation.has_book_access(book_id, principal.get("sub"))
    location = {"shelf_id": book.shelf_id, "position": book.position} if allowed else None
    return {"book_id": book_id, "has_access": allowed, "location": location}


@app.post("/api/books/{book_id}/cover", response_model=BookModel, dependencies=[Depends(require_staff)])
async def upload_cover(book_id: str, request: Request):
    """Store the raw request body as the book's cover image."""
    save_cover(library, book_id, await request.body())
    invalidate_cache("books")
    return library.get_book(book_id).to_dict()


# --- Book instances ---
@app.get("/api/books/{book_id}/instances", dependencies=[Depends(require_staff)])
def book_instances(book_id: str):
    _require(library.get_book(book_id), "Book not found.")
    return [i.to_dict() for i in library.list_instances_for_book(book_id)]


@app.post("/api/books/{book_id}/instances", status_code=201, dependencies=[Depends(require_staff)])
def create_instance(book_id: str, payload: InstanceCreateModel):
    fields = payload.model_dump(exclude_none=True)
    instance = library.create_instance(book_id, **fields)
    invalidate_cache("books")
    return instance.to_dict()


@app.post("/api/books/{book_id}/instances/multiple", status_code=201, dependencies=[Depends(require_staff)])
def create_multiple_instances(book_id: str, payload: MultipleInstancesModel):
    defaults = {"condition": payload.condition}
    if payload.location:
        defaults["location"] = payload.location
    created = library.create_multiple_instances(book_id, payload.count, **defaults)
    invalidate_cache("books")
    return [i.to_dict() for i in created]


@app.post("/api/books/{book_id}/instances/auto-create", status_code=201, dependencies=[Depends(require_staff)])
def auto_create_instances(book_id: str):
    created = library.auto_create_instances(book_id)
    invalidate_cache("books")
    return [i.to_dict() for i in created]


@app.get("/api/books/{book_id}/instances/summary", dependencies=[Depends(require_staff)])
def instance_status_summary(book_id: str):
    return library.get_instance_status_summary(book_id)


@app.get("/api/instances", dependencies=[Depends(require_staff)])
def list_instances(status: Optional[str] = Query(None)):
    return [i.to_dict() for i in library.list_instances(status=status)]


@app.get("/api/instances/stats", dependencies=[Depends(require_staff)])
def instance_stats():
    return library.get_instance_stats()


@app.post("/api/instances/bulk", dependencies=[Depends(require_staff)])
def bulk_create_instances(payload: BulkInstancesModel):
    result = library.bulk_create_instances(payload.items)
    invalidate_cache("books")
    return {"created": [i.to_dict() for i in result["created"]], "errors": result["errors"]}


@app.put("/api/instances/bulk-status", dependencies=[Depends(require_staff)])
def bulk_update_instance_statuses(payload: BulkInstanceStatusModel):
    result = library.bulk_update_instance_statuses(payload.instance_ids, payload.status)
    invalidate_cache("books")
    return result


@app.get("/api/instances/{instance_id}", dependencies=[Depends(require_staff)])
def get_instance(instance_id: str):
    return _require(library.get_instance(instance_id), "Book instance not found.").to_dict()


@app.put("/api/instances/{instance_id}", dependencies=[Depends(require_staff)])
def update_instance(instance_id: str, payload: InstanceUpdateModel):
    instance = library.update_instance(instance_id, **payload.model_dump(exclude_none=True))
    invalidate_cache("books")
    return instance.to_dict()


@app.put("/api/instances/{instance_id}/status", dependencies=[Depends(require_staff)])
def update_instance_status(instance_id: str, payload: StatusModel):
    instance = library.update_instance_status(instance_id, payload.status)
    invalidate_cache("books")
    return instance.to_dict()


@app.delete("/api/instances/{instance_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_instance(instance_id: str):
    if not library.delete_instance(instance_id):
        raise HTTPException(status_code=404, detail="Book instance not found.")
    invalidate_cache("books")
    return Response(status_code=204)


@app.get("/api/instances/{instance_id}/reservation", dependencies=[Depends(require_staff)])
def instance_reservation(instance_id: str):
    _require(library.get_instance(instance_id), "Book instance not found.")
    reservation = library.get_instance_reservation(instance_id)
    return reservation.to_dict() if reservation else None


# --- Shelves ---
@app.get("/api/shelves")
def list_shelves():
    return [s.to_dict() for s in shelves.list_shelves()]


@app.post("/api/shelves", status_code=201, dependencies=[Depends(require_staff)])
def create_shelf(payload: ShelfCreateModel):
    if payload.pos_x is None or payload.pos_y is None:
        shelf = shelves.auto_position_shelf(payload.category, payload.capacity, payload.shelf_number)
    else:
        shelf = shelves.create_shelf(payload.category, payload.capacity, payload.shelf_number,
                                     payload.pos_x, payload.pos_y)
    return shelf.to_dict()


@app.post("/api/shelves/auto-arrange", dependencies=[Depends(require_staff)])
def auto_arrange(payload: ArrangeModel):
    arrangements = shelves.auto_arrange(payload.book_ids, dry_run=payload.dry_run)
    if not payload.dry_run:
        invalidate_cache("books")
    return {"dry_run": payload.dry_run, "arrangements": arrangements}


@app.get("/api/shelves/{shelf_id}")
def get_shelf(shelf_id: int):
    return _require(shelves.get_shelf(shelf_id), "Shelf not found.").to_dict()


@app.put("/api/shelves/{shelf_id}", dependencies=[Depends(require_staff)])
def update_shelf(shelf_id: int, payload: ShelfUpdateModel):
    return shelves.update_shelf(shelf_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.put("/api/shelves/{shelf_id}/move", dependencies=[Depends(require_staff)])
def move_shelf(shelf_id: int, payload: MoveModel):
    return shelves.move_shelf(shelf_id, payload.pos_x, payload.pos_y).to_dict()


@app.delete("/api/shelves/{shelf_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_shelf(shelf_id: int):
    if not shelves.delete_shelf(shelf_id):
        raise HTTPException(status_code=404, detail="Shelf not found.")
    invalidate_cache("books")
    return Response(status_code=204)


@app.get("/api/shelves/{shelf_id}/layout", dependencies=[Depends(require_staff)])
def shelf_layout(shelf_id: int):
    return shelves.get_layout(shelf_id)


# --- Journals, issues and articles ---
@app.get("/api/journals")
def list_journals(q: Optional[str] = Query(None), category: Optional[str] = Query(None)):
    return [j.to_dict() for j in journals.list_journals(q, category)]


@app.post("/api/journals", status_code=201, dependencies=[Depends(require_staff)])
def create_journal(payload: JournalModel):
    data = payload.model_dump()
    return journals.create_journal(data.pop("title"), **data).to_dict()


@app.get("/api/journals/statistics", dependencies=[Depends(require_staff)])
def journal_statistics():
    return journals.get_statistics()


@app.get("/api/journals/{journal_id}")
def get_journal(journal_id: int):
    return journals.journal_details(journal_id)


@app.put("/api/journals/{journal_id}", dependencies=[Depends(require_staff)])
def update_journal(journal_id: int, payload: JournalUpdateModel):
    return journals.update_journal(journal_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.delete("/api/journals/{journal_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_journal(journal_id: int):
    if not journals.delete_journal(journal_id):
        raise HTTPException(status_code=404, detail="Journal not found.")
    return Response(status_code=204)


@app.get("/api/journals/{journal_id}/issues")
def journal_issues(journal_id: int):
    _require(journals.get_journal(journal_id), "Journal not found.")
    return [i.to_dict() for i in journals.list_issues(journal_id)]


@app.post("/api/issues", status_code=201, dependencies=[Depends(require_staff)])
def create_issue(payload: IssueModel):
    data = payload.model_dump()
    return journals.create_issue(data.pop("journal_id"), data.pop("volume_number"), data.pop("issue_number"),
                                 data.pop("publication_date"), data.pop("page_count"), **data).to_dict()


@app.get("/api/issues/{issue_id}")
def get_issue(issue_id: int):
    return journals.issue_details(issue_id)


@app.put("/api/issues/{issue_id}", dependencies=[Depends(require_staff)])
def update_issue(issue_id: int, payload: IssueUpdateModel):
    return journals.update_issue(issue_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.delete("/api/issues/{issue_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_issue(issue_id: int):
    if not journals.delete_issue(issue_id):
        raise HTTPException(status_code=404, detail="Issue not found.")
    return Response(status_code=204)


@app.get("/api/articles")
def list_articles(issue_id: Optional[int] = Query(None), q: Optional[str] = Query(None)):
    found = journals.search_articles(q) if q else journals.list_articles(issue_id)
    return [a.to_dict() for a in found]


@app.post("/api/articles", status_code=201, dependencies=[Depends(require_staff)])
def create_article(payload: ArticleModel):
    data = payload.model_dump()
    return journals.create_article(data.pop("issue_id"), data.pop("title"), data.pop("authors"),
                                   data.pop("start_page"), data.pop("end_page"), **data).to_dict()


@app.get("/api/articles/{article_id}")
def get_article(article_id: int):
    return _require(journals.get_article(article_id), "Article not found.").to_dict()


@app.put("/api/articles/{article_id}", dependencies=[Depends(require_staff)])
def update_article(article_id: int, payload: ArticleUpdateModel):
    return journals.update_article(article_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.delete("/api/articles/{article_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_article(article_id: int):
    if not journals.delete_article(article_id):
        raise HTTPException(status_code=404, detail="Article not found.")
    return Response(status_code=204)


# --- Users ---
@app.get("/api/users", dependencies=[Depends(require_staff)])
def list_users(
    request: Request,
    response: Response,
    q: Optional[str] = Query(None),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    _paginate(request, response, accounts.count_users(q), limit, offset)
    return [u.to_dict() for u in accounts.list_users(q, limit, offset)]


@app.get("/api/users/search", dependencies=[Depends(require_staff)])
def search_users(q: str = Query(..., min_length=1)):
    return [u.to_dict() for u in accounts.search_users(q)]


@app.get("/api/users/with-books", dependencies=[Depends(require_staff)])
def users_with_books():
    return accounts.users_with_books()


@app.get("/api/users/with-fines", dependencies=[Depends(require_staff)])
def users_with_fines():
    return accounts.users_with_fines()


@app.get("/api/users/statistics", dependencies=[Depends(require_staff)])
def user_statistics():
    return accounts.get_user_statistics()


@app.post("/api/users", status_code=201, dependencies=[Depends(require_staff)])
def create_user(payload: UserCreateModel):
    user = accounts.create_user(
        payload.full_name, payload.email, payload.password, phone=payload.phone, roles=payload.roles,
        max_books_allowed=payload.max_books_allowed, loan_period_days=payload.loan_period_days,
    )
    mailer.send_template(user.email, "welcome", name=user.full_name, email=user.email)
    return user.to_dict()


@app.get("/api/users/{user_id}")
def get_user(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return _require(accounts.get_user(user_id), "User not found.").to_dict()


@app.put("/api/users/{user_id}", dependencies=[Depends(require_staff)])
def update_user(user_id: str, payload: UserUpdateModel):
    return accounts.update_user(user_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.delete("/api/users/{user_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_user(user_id: str):
    if not accounts.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return Response(status_code=204)


@app.put("/api/users/{user_id}/active", dependencies=[Depends(require_staff)])
async def set_user_active(user_id: str, payload: ActiveModel):
    """Block or unblock an account and tell the reader."""
    user = accounts.set_active(user_id, payload.is_active)
    if payload.is_active:
        notification = notification_center.send(user_id, "Account unblocked", "Your account is active again.",
                                                type="AccountUnblocked")
    else:
        notification = notification_center.send(user_id, "Account blocked",
                                                "Your account was blocked. Please contact the library.",
                                                type="AccountBlocked", priority="High")
    await _publish([notification])
    return user.to_dict()


@app.put("/api/users/{user_id}/password", status_code=204)
def change_user_password(user_id: str, payload: PasswordChangeModel,
                         principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    accounts.change_password(user_id, payload.old_password, payload.new_password)
    return Response(status_code=204)


@app.post("/api/users/{user_id}/reset-password", dependencies=[Depends(require_staff)])
def reset_user_password(user_id: str):
    user = _require(accounts.get_user(user_id), "User not found.")
    temporary = accounts.reset_password(user_id)
    emailed = mailer.send_template(user.email, "password_reset", name=user.full_name, password=temporary)
    return {"temporary_password": temporary, "emailed": emailed}


@app.get("/api/users/{user_id}/reservations")
def user_reservations(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return [r.to_dict() for r in circulation.reservations_for_user(user_id)]


@app.get("/api/users/{user_id}/reservations/active")
def user_active_reservations(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return [r.to_dict() for r in circulation.reservations_for_user(user_id, active_only=True)]


@app.get("/api/users/{user_id}/reservations/overdue")
def user_overdue_reservations(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return [r.to_dict() for r in circulation.reservations_for_user(user_id, overdue_only=True)]


@app.get("/api/users/{user_id}/recommendations", response_model=List[BookModel])
def user_recommendations(user_id: str, limit: int = Query(10, ge=1, le=50),
                         principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return [b.to_dict() for b in accounts.get_recommendations(user_id, limit)]


@app.get("/api/users/{user_id}/fines")
def user_fines(user_id: str, unpaid_only: bool = Query(False), principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    fines = circulation.list_fines(user_id=user_id, unpaid_only=unpaid_only)
    return {"fines": [f.to_dict() for f in fines], "unpaid_total": circulation.user_fine_total(user_id)}


@app.put("/api/users/{user_id}/role", dependencies=[Depends(require_staff)])
def set_user_role(user_id: str, payload: UserRoleModel):
    return accounts.set_user_role(user_id, payload.role_id).to_dict()


@app.post("/api/users/{user_id}/roles/{role_id}", status_code=204, dependencies=[Depends(require_staff)])
def assign_role(user_id: str, role_id: int):
    accounts.assign_role(user_id, role_id)
    return Response(status_code=204)


@app.delete("/api/users/{user_id}/roles/{role_id}", status_code=204, dependencies=[Depends(require_staff)])
def remove_role(user_id: str, role_id: int):
    if not accounts.remove_role(user_id, role_id):
        raise HTTPException(status_code=404, detail="User does not have this role.")
    return Response(status_code=204)


# --- Favorites ---
@app.get("/api/users/{user_id}/favorites", response_model=List[BookModel])
def list_favorites(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return [b.to_dict() for b in library.list_favorites(user_id)]


@app.post("/api/users/{user_id}/favorites/{book_id}", status_code=204)
def add_favorite(user_id: str, book_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    library.add_favorite(user_id, book_id)
    return Response(status_code=204)


@app.delete("/api/users/{user_id}/favorites/{book_id}", status_code=204)
def remove_favorite(user_id: str, book_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    if not library.remove_favorite(user_id, book_id):
        raise HTTPException(status_code=404, detail="Book is not in favorites.")
    return Response(status_code=204)


# --- Roles ---
@app.get("/api/roles", dependencies=[Depends(require_staff)])
def list_roles():
    return [r.to_dict() for r in accounts.list_roles()]


@app.post("/api/roles", status_code=201, dependencies=[Depends(require_staff)])
def create_role(payload: RoleModel):
    return accounts.create_role(payload.name, payload.description).to_dict()


@app.get("/api/roles/{role_id}", dependencies=[Depends(require_staff)])
def get_role(role_id: int):
    return _require(accounts.get_role(role_id), "Role not found.").to_dict()


@app.put("/api/roles/{role_id}", dependencies=[Depends(require_staff)])
def update_role(role_id: int, payload: RoleUpdateModel):
    return accounts.update_role(role_id, payload.name, payload.description).to_dict()


@app.delete("/api/roles/{role_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_role(role_id: int):
    if not accounts.delete_role(role_id):
        raise HTTPException(status_code=404, detail="Role not found.")
    return Response(status_code=204)


@app.post("/api/roles/{role_id}/assign-many", dependencies=[Depends(require_staff)])
def assign_role_to_many(role_id: int, payload: UserIdsModel):
    return accounts.assign_role_to_many(payload.user_ids, role_id)


@app.post("/api/roles/{role_id}/remove-many", dependencies=[Depends(require_staff)])
def remove_role_from_many(role_id: int, payload: UserIdsModel):
    return accounts.remove_role_from_many(payload.user_ids, role_id)


# --- Reservations ---
@app.get("/api/reservations", dependencies=[Depends(require_staff)])
def list_reservations(
    request: Request,
    response: Response,
    status: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    _paginate(request, response, circulation.count_reservations(status, user_id, book_id, q), limit, offset)
    return [r.to_dict() for r in circulation.list_reservations(status, user_id, book_id, q, limit, offset)]


@app.get("/api/reservations/search", dependencies=[Depends(require_staff)])
def search_reservations(q: str = Query(..., min_length=1)):
    return [r.to_dict() for r in circulation.search_reservations(q)]


@app.get("/api/reservations/overdue", dependencies=[Depends(require_staff)])
def overdue_reservations():
    return [r.to_dict() for r in circulation.get_overdue_reservations()]


@app.get("/api/reservations/statistics", dependencies=[Depends(require_staff)])
def reservation_statistics():
    return circulation.get_reservation_statistics()


@app.get("/api/reservations/dates")
def reservation_dates():
    return circulation.get_reservation_dates()


@app.put("/api/reservations/bulk", dependencies=[Depends(require_staff)])
async def bulk_update_reservations(payload: BulkReservationModel):
    result = circulation.bulk_update_reservations(payload.reservation_ids, payload.status)
    await _publish_circulation()
    invalidate_cache("books")
    return result


@app.post("/api/reservations/mark-overdue", dependencies=[Depends(require_staff)])
def mark_overdue():
    return [r.to_dict() for r in circulation.mark_overdue()]


@app.post("/api/reservations", status_code=201)
async def create_reservation(payload: ReservationCreateModel, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, payload.user_id)
    reservation = circulation.create_reservation(
        payload.user_id, payload.book_id, payload.reservation_date, payload.expiration_date, payload.notes,
    )
    await _publish_circulation()
    return reservation.to_dict()


@app.get("/api/reservations/{reservation_id}")
def get_reservation(reservation_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    reservation = _require(circulation.get_reservation(reservation_id), "Reservation not found.")
    _ensure_self_or_staff(principal, reservation.user_id)
    result = reservation.to_dict()
    result["status_info"] = get_status_info(reservation.status)
    return result


@app.put("/api/reservations/{reservation_id}", dependencies=[Depends(require_staff)])
async def update_reservation(reservation_id: str, payload: ReservationUpdateModel):
    reservation = circulation.update_reservation(reservation_id, **payload.model_dump(exclude_none=True))
    await _publish_circulation()
    invalidate_cache("books")
    return reservation.to_dict()


@app.put("/api/reservations/{reservation_id}/status")
async def change_reservation_status(reservation_id: str, payload: StatusModel,
                                    principal: Dict[str, Any] = Depends(get_principal)):
    """Staff move reservations freely; readers may only cancel their own."""
    reservation = _require(circulation.get_reservation(reservation_id), "Reservation not found.")
    if not _is_staff(principal):
        _ensure_self_or_staff(principal, reservation.user_id)
        if payload.status != "cancelled":
            raise PermissionError("Readers can only cancel their reservations.")
    reservation = circulation.change_status(reservation_id, payload.status)
    await _publish_circulation()
    invalidate_cache("books")
    return reservation.to_dict()


@app.delete("/api/reservations/{reservation_id}", status_code=204, dependencies=[Depends(require_staff)])
def delete_reservation(reservation_id: str):
    if not circulation.delete_reservation(reservation_id):
        raise HTTPException(status_code=404, detail="Reservation not found.")
    invalidate_cache("books")
    return Response(status_code=204)


# --- Wait list ---
@app.get("/api/books/{book_id}/queue", dependencies=[Depends(require_staff)])
def book_queue(book_id: str):
    return circulation.queue_for_book(book_id)


@app.post("/api/books/{book_id}/queue", status_code=201)
def join_queue(book_id: str, payload: QueueJoinModel, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, payload.user_id)
    return circulation.join_queue(payload.user_id, book_id)


@app.get("/api/users/{user_id}/queue")
def user_queue(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return circulation.queue_for_user(user_id)


@app.delete("/api/users/{user_id}/queue/{entry_id}", status_code=204)
def leave_queue(user_id: str, entry_id: int, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    if not any(entry["id"] == entry_id for entry in circulation.queue_for_user(user_id)):
        raise HTTPException(status_code=404, detail="Queue entry not found.")
    circulation.leave_queue(entry_id)
    return Response(status_code=204)


# --- Fines ---
@app.get("/api/fines", dependencies=[Depends(require_staff)])
def list_fines(user_id: Optional[str] = Query(None), unpaid_only: bool = Query(False)):
    return [f.to_dict() for f in circulation.list_fines(user_id=user_id, unpaid_only=unpaid_only)]


@app.post("/api/fines", status_code=201, dependencies=[Depends(require_staff)])
async def create_fine(payload: FineCreateModel):
    fine = circulation.create_fine(**payload.model_dump())
    await _publish_circulation()
    return fine.to_dict()


@app.post("/api/fines/{fine_id}/pay", dependencies=[Depends(require_staff)])
def pay_fine(fine_id: str):
    return circulation.pay_fine(fine_id).to_dict()


# --- Notifications ---
@app.get("/api/notifications", dependencies=[Depends(require_staff)])
def list_notifications(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    type: Optional[str] = Query(None),
):
    items, total = notification_center.list_all(page, page_size, type)
    response.headers["X-Total-Count"] = str(total)
    return [n.to_dict() for n in items]


@app.get("/api/notifications/admin-stats", dependencies=[Depends(require_staff)])
def notification_admin_stats():
    return notification_center.admin_stats()


@app.post("/api/notifications", status_code=201, dependencies=[Depends(require_staff)])
async def send_notification(payload: NotificationCreateModel):
    notification = notification_center.send(**payload.model_dump())
    await _publish([notification])
    return notification.to_dict()


@app.post("/api/notifications/bulk", status_code=201, dependencies=[Depends(require_staff)])
async def send_bulk_notification(payload: BulkNotificationModel):
    sent = notification_center.send_bulk(payload.user_ids, payload.title, payload.message, payload.type,
                                         payload.priority)
    await _publish(sent)
    return {"sent": len(sent)}


@app.post("/api/notifications/email", dependencies=[Depends(require_staff)])
def send_custom_email(payload: EmailModel):
    user = _require(accounts.get_user(payload.user_id), "User not found.")
    return {"sent": mailer.send_email(user.email, payload.subject, payload.body)}


@app.post("/api/notifications/email-template", dependencies=[Depends(require_staff)])
def send_template_email(payload: TemplateEmailModel):
    user = _require(accounts.get_user(payload.user_id), "User not found.")
    context = {"name": user.full_name, "email": user.email, **payload.context}
    return {"sent": mailer.send_template(user.email, payload.template, **context)}


@app.post("/api/notifications/sweeps/due-reminders", dependencies=[Depends(require_staff)])
async def sweep_due_reminders(days: Optional[int] = Query(None, ge=1)):
    sent = notification_center.send_due_reminders(days)
    await _publish(sent)
    return {"sent": len(sent)}


@app.post("/api/notifications/sweeps/overdue", dependencies=[Depends(require_staff)])
async def sweep_overdue():
    sent = notification_center.send_overdue_notifications()
    await _publish(sent)
    return {"sent": len(sent)}


@app.post("/api/notifications/sweeps/fines", dependencies=[Depends(require_staff)])
async def sweep_fines():
    sent = notification_center.send_fine_notifications()
    await _publish(sent)
    return {"sent": len(sent)}


@app.put("/api/notifications/read")
def mark_notifications_read(payload: MarkReadModel, principal: Dict[str, Any] = Depends(get_principal)):
    for notification_id in payload.notification_ids:
        notification = notification_center.get(notification_id)
        if notification:
            _ensure_self_or_staff(principal, notification.user_id)
    return {"updated": notification_center.mark_many_read(payload.notification_ids)}


@app.put("/api/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    notification = _require(notification_center.get(notification_id), "Notification not found.")
    _ensure_self_or_staff(principal, notification.user_id)
    return notification_center.mark_read(notification_id).to_dict()


@app.delete("/api/notifications/{notification_id}", status_code=204)
def delete_notification(notification_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    notification = _require(notification_center.get(notification_id), "Notification not found.")
    _ensure_self_or_staff(principal, notification.user_id)
    notification_center.delete(notification_id)
    return Response(status_code=204)


@app.get("/api/users/{user_id}/notifications")
def user_notifications(
    user_id: str,
    response: Response,
    is_read: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    principal: Dict[str, Any] = Depends(get_principal),
):
    _ensure_self_or_staff(principal, user_id)
    items, total = notification_center.list_for_user(user_id, is_read, page, page_size)
    response.headers["X-Total-Count"] = str(total)
    return [n.to_dict() for n in items]


@app.get("/api/users/{user_id}/notifications/unread-count")
def unread_count(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return {"unread": notification_center.unread_count(user_id)}


@app.get("/api/users/{user_id}/notifications/stats")
def user_notification_stats(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return notification_center.stats_for_user(user_id)


@app.put("/api/users/{user_id}/notifications/read-all")
def mark_all_read(user_id: str, principal: Dict[str, Any] = Depends(get_principal)):
    _ensure_self_or_staff(principal, user_id)
    return {"updated": notification_center.mark_all_read(user_id)}


@app.websocket("/hubs/notifications")
async def notifications_hub(websocket: WebSocket, token: str = Query(...)):
    """Live notifications for a signed-in reader; the token travels in the query string."""
    try:
        user_id = accounts.decode_token(token)["sub"]
    except PermissionError:
        await websocket.close(code=1008)
        return
    await hub.connect(websocket, user_id)
    try:
        await websocket.send_json({"type": "unread_count", "data": notification_center.unread_count(user_id)})
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket, user_id)


# --- Dialog history ---
@app.get("/api/dialog-history", dependencies=[Depends(require_staff)])
def list_dialog_history(limit: int = Query(100, ge=1, le=1000)):
    return dialog_history.list_all(limit)


@app.post("/api/dialog-history", status_code=201, dependencies=[Depends(require_staff)])
def add_dialog_message(payload: DialogMessageModel):
    return dialog_history.add_message(payload.conversation_id, payload.role, payload.content, payload.tool_name)


@app.get("/api/dialog-history/search", dependencies=[Depends(require_staff)])
def search_dialog_history(q: str = Query(..., min_length=1)):
    return dialog_history.search(q)


@app.delete("/api/dialog-history", dependencies=[Depends(require_staff)])
def prune_dialog_history(older_than_days: int = Query(..., ge=0)):
    return {"deleted": dialog_history.delete_older_than(older_than_days)}


@app.get("/api/dialog-history/{conversation_id}", dependencies=[Depends(require_staff)])
def conversation_history(conversation_id: str):
    return dialog_history.by_conversation(conversation_id)


# --- Assistant ---
def _selection_config(user_level: int, preferred: List[str], excluded: List[str], append: bool,
                      existing: List[str]) -> SelectionConfig:
    return SelectionConfig(
        user_level=user_level,
        preferred_categories=preferred,
        excluded_categories=excluded,
        append_to_existing=append,
        existing_tools=[tool for tool in (get_tool(name) for name in existing) if tool],
    )


@app.get("/api/assistant/categories", dependencies=[Depends(require_staff)])
def tool_categories(user_level: int = Query(UserLevel.INTERMEDIATE, ge=1, le=3)):
    return [category.to_dict() for category in categories_for_level(user_level)]


@app.get("/api/assistant/tools", dependencies=[Depends(require_staff)])
def assistant_tools():
    return [tool.to_dict() for tool in ALL_TOOLS]


@app.post("/api/assistant/select-tools", dependencies=[Depends(require_staff)])
def assistant_select_tools(payload: ToolSelectionRequest):
    """Preview which tools would go along with a query."""
    config = _selection_config(payload.user_level, payload.preferred_categories, payload.excluded_categories,
                               payload.append_to_existing, payload.existing_tools)
    context = None
    if payload.history:
        context = analyze_execution_context([m.model_dump() for m in payload.history], payload.iteration)
    selection = select_tools(payload.query, ALL_TOOLS, config, context)
    stats = get_tool_usage_stats(selection.selected_tools, ALL_TOOLS)
    return {
        "tools": [tool.name for tool in selection.selected_tools],
        "analysis": selection.analysis.to_dict(),
        "used_categories": selection.used_categories,
        "stats": stats,
        "summary": create_selection_summary(selection.analysis, selection.used_categories, stats),
    }


@app.get("/api/assistant/suggestions", dependencies=[Depends(require_staff)])
def assistant_suggestions(q: str = Query(""), limit: int = Query(5, ge=1, le=25)):
    return CommandSuggester.get_suggestions(q, limit)


@app.get("/api/assistant/cache", dependencies=[Depends(require_staff)])
def assistant_cache_stats():
    return cache_stats()


@app.delete("/api/assistant/cache", status_code=204, dependencies=[Depends(require_staff)])
def assistant_clear_cache():
    clear_caches()
    return Response(status_code=204)


@app.get("/api/assistant/usage", dependencies=[Depends(require_staff)])
def assistant_usage():
    return assistant.get_usage_stats()


@app.post("/api/assistant/chat", dependencies=[Depends(require_staff)])
async def assistant_chat(payload: ChatRequest):
    """One assistant turn: pick tools, ask the model, keep the dialog."""
    conversation_id = payload.conversation_id or str(uuid.uuid4())
    history = [m.model_dump() for m in payload.history]
    context = analyze_execution_context(history, len(history)) if history else None
    selection = select_tools(payload.message, ALL_TOOLS, SelectionConfig(user_level=payload.user_level), context)

    messages = [{"role": "system", "content": system_instructions(payload.user_level)}]
    messages.extend({"role": m["role"], "content": m["content"] or ""} for m in history[-10:]
                    if m["role"] in ("user", "assistant"))
    messages.append({"role": "user", "content": payload.message})

    dialog_history.add_message(conversation_id, "user", payload.message)
    answer = await assistant.chat(messages, selection.selected_tools, payload.model)
    tool_name = answer["tool_calls"][0]["name"] if answer["tool_calls"] else None
    if answer["content"] or tool_name:
        dialog_history.add_message(conversation_id, "assistant", answer["content"] or f"[{tool_name}]", tool_name)

    stats = get_tool_usage_stats(selection.selected_tools, ALL_TOOLS)
    return {
        "conversation_id": conversation_id,
        "content": answer["content"],
        "tool_calls": [
            {**call, "api_method": get_tool(call["name"]).api_method if get_tool(call["name"]) else None,
             "api_endpoint": get_tool(call["name"]).api_endpoint if get_tool(call["name"]) else None}
            for call in answer["tool_calls"]
        ],
        "selected_tools": [tool.name for tool in selection.selected_tools],
        "summary": create_selection_summary(selection.analysis, selection.used_categories, stats),
    }


# --- Covers ---
@app.get("/api/covers/{isbn}")
async def get_cover(isbn: str, size: str = Query("L", description="Cover size: S, M, L")):
    """Proxy an Open Library cover; a placeholder SVG when none exists."""
    found = await fetch_cover(isbn, size)
    if found is None:
        return Response(content=DEFAULT_COVER_SVG, media_type="image/svg+xml")
    content, media_type = found
    return Response(content=content, media_type=media_type)


@app.get("/covers/{filename}")
def uploaded_cover(filename: str):
    path = os.path.join(settings.covers_dir, os.path.basename(filename))
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Cover not found.")
    return FileResponse(path, media_type="image/jpeg")


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": __version__, "docs": "/docs"}
