import hmac
import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from shelvy import __version__
from shelvy.accounts import AccountManager
from shelvy.cache import cache_manager
from shelvy.clubs import ClubManager
from shelvy.config import settings
from shelvy.database import get_db_connection, initialize_database
from shelvy.metadata import MetadataEnricher
from shelvy.notifications import Notifier
from shelvy.search import BookSearch
from shelvy.services.ai_service import AIService, AIServiceError, CreditsExhausted, RateLimitExceeded
from shelvy.services.email_service import EmailDeliveryError
from shelvy.services.http_client import cleanup_http_client, get_http_client
from shelvy.services.isbndb_service import ISBNdbAPIError
from shelvy.services.nyt_service import NYTAPIError, NYTBooksService
from shelvy.shelf import Shelf
from shelvy.social import SocialGraph
from shelvy.utils.covers import amazon_book_url

logger = logging.getLogger(__name__)

accounts = AccountManager()
shelf = Shelf()
social = SocialGraph(shelf)
clubs = ClubManager()
book_search = BookSearch()
enricher = MetadataEnricher()
notifier = Notifier()


@asynccontextmanager
async def lifespan(app: FastAPI):
    initialize_database()
    await get_http_client()
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=f"{settings.app_name} API", version=__version__, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Errors ---
@contextmanager
def domain_errors():
    """Map domain exceptions onto HTTP status codes."""
    try:
        yield
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


# --- Security ---
authorization_header = APIKeyHeader(name="Authorization", auto_error=False)
admin_key_header = APIKeyHeader(name="x-admin-key", auto_error=False)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def current_user(authorization: Optional[str] = Security(authorization_header)) -> Dict[str, Any]:
    """Dependency resolving the bearer session token to a user."""
    user = accounts.resolve_token(_bearer_token(authorization))
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def optional_user(authorization: Optional[str] = Security(authorization_header)) -> Optional[Dict[str, Any]]:
    return accounts.resolve_token(_bearer_token(authorization))


def admin_user(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if not accounts.has_role(user["id"], "admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def batch_caller(authorization: Optional[str] = Security(authorization_header),
                 admin_key: Optional[str] = Security(admin_key_header)) -> str:
    """Batch jobs run for the configured admin key or for an admin session."""
    if settings.admin_key and admin_key and hmac.compare_digest(admin_key, settings.admin_key):
        return "admin-key"
    user = current_user(authorization)
    if not accounts.has_role(user["id"], "admin"):
        raise HTTPException(status_code=403, detail="Forbidden - Admin access required")
    return user["id"]


# --- Models ---
class SignUpRequest(BaseModel):
    email: str
    password: str
    username: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class ResetPasswordRequest(BaseModel):
    email: Optional[str] = None
    redirectTo: Optional[str] = None


class ResetPasswordConfirm(BaseModel):
    token: str
    password: str


class MigrationPasswordRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class BookModel(BaseModel):
    id: str
    user_id: str
    title: str
    author: str
    status: str
    color: str
    cover_url: Optional[str] = None
    page_count: Optional[int] = None
    isbn: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    amazon_url: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    status: str = "want-to-read"
    color: Optional[str] = None
    cover_url: Optional[str] = None
    page_count: Optional[int] = Field(None, ge=0)
    isbn: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    completed_at: Optional[str] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    status: Optional[str] = None
    color: Optional[str] = None
    cover_url: Optional[str] = None
    page_count: Optional[int] = Field(None, ge=0)
    isbn: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    completed_at: Optional[str] = None


class MoveBookRequest(BaseModel):
    status: str


class ShelfSettingsUpdate(BaseModel):
    is_public: Optional[bool] = None
    display_name: Optional[str] = None
    shelf_skin: Optional[str] = None
    background_theme: Optional[str] = None
    show_bookends: Optional[bool] = None
    show_wood_grain: Optional[bool] = None
    show_ambient_light: Optional[bool] = None
    show_plant: Optional[bool] = None
    decor_density: Optional[str] = None


class ProfileUpdate(BaseModel):
    username: Optional[str] = None
    avatar_url: Optional[str] = None


class CommentCreate(BaseModel):
    content: str


class NoteUpsert(BaseModel):
    content: str
    color: str = "yellow"


class RecommendationCreate(BaseModel):
    to_user_id: str
    title: str
    author: str
    cover_url: Optional[str] = None
    message: Optional[str] = None
    isbn: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    page_count: Optional[int] = None


class RecommendationResponse(BaseModel):
    accept: bool


class SeenRequest(BaseModel):
    kind: str = "all"


class ClubCreate(BaseModel):
    name: str
    description: Optional[str] = None


class ClubJoin(BaseModel):
    invite_code: str


class SuggestionCreate(BaseModel):
    title: str
    author: str
    cover_url: Optional[str] = None


class SuggestionStatus(BaseModel):
    status: str


class ReflectionUpsert(BaseModel):
    rating: int
    content: str
    is_anonymous: bool = False


class QueryRequest(BaseModel):
    query: Any = None


class CacheSearchRequest(BaseModel):
    query: Any = None
    isbn: Optional[str] = None
    mode: str = "search"


class ISBNdbSearchRequest(BaseModel):
    query: Any = None
    isbn: Optional[str] = None
    isbns: Optional[List[str]] = None
    mode: str = "search"


class EnrichRequest(BaseModel):
    title: Any = None
    author: Any = None


class BatchRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=500)


class RefreshCoversRequest(BaseModel):
    bookIds: Optional[List[str]] = None
    limit: int = Field(50, ge=1, le=500)


class RecommenderRequest(BaseModel):
    books: Any = None
    mood: Any = None


class BestsellersRequest(BaseModel):
    listName: Optional[str] = None


class NotifyRecommendationRequest(BaseModel):
    recipientUserId: Optional[str] = None
    recipientEmail: Optional[str] = None
    senderUsername: Optional[str] = None
    bookTitle: Optional[str] = None
    bookAuthor: Optional[str] = None
    message: Optional[str] = None


class NotifyFollowerRequest(BaseModel):
    followingUserId: Optional[str] = None
    followerUserId: Optional[str] = None


class InviteRequest(BaseModel):
    recipientEmail: Optional[str] = None
    senderName: Optional[str] = None
    shelfUrl: Optional[str] = None


class AnnouncementRequest(BaseModel):
    testEmail: Optional[str] = None
    sendToAll: bool = False


def _book_model(book) -> BookModel:
    data = book.to_dict()
    data["amazon_url"] = amazon_book_url(book.title, book.author, book.isbn)
    return BookModel(**data)


# --- Health ---
@app.get("/health")
async def health():
    """Liveness probe with a quick database check."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "db": db_ok,
        "cache": cache_manager.get_stats(),
        "services": {
            "ai": settings.enable_ai_features and bool(settings.ai_api_key),
            "email": settings.enable_email_notifications and bool(settings.resend_api_key),
            "isbndb": bool(settings.isbndb_api_key),
            "nyt": bool(settings.nyt_books_api_key),
        },
    }


# --- Auth and account ---
@app.post("/auth/signup", response_model=TokenResponse, status_code=201)
def sign_up(payload: SignUpRequest):
    with domain_errors():
        user = accounts.sign_up(payload.email, payload.password, payload.username)
    token = accounts.sign_in(payload.email, payload.password)
    return TokenResponse(access_token=token, user=user)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    try:
        token = accounts.sign_in(payload.email, payload.password)
    except PermissionError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return TokenResponse(access_token=token, user=accounts.get_user_by_email(payload.email))


@app.post("/auth/logout")
def logout(authorization: Optional[str] = Security(authorization_header),
           user: Dict[str, Any] = Depends(current_user)):
    accounts.sign_out(_bearer_token(authorization))
    return {"success": True}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(current_user)):
    return {**user, "is_admin": accounts.has_role(user["id"], "admin")}


@app.post("/auth/reset-password")
async def reset_password(payload: ResetPasswordRequest):
    with domain_errors():
        return await accounts.request_password_reset(payload.email, payload.redirectTo)


@app.post("/auth/reset-password/confirm")
def confirm_reset_password(payload: ResetPasswordConfirm):
    with domain_errors():
        accounts.complete_password_reset(payload.token, payload.password)
    return {"success": True}


@app.post("/auth/migration-password")
def migration_password(payload: MigrationPasswordRequest):
    with domain_errors():
        accounts.set_migration_password(payload.email, payload.password)
    return {"success": True}


@app.delete("/account")
def delete_account(user: Dict[str, Any] = Depends(current_user)):
    try:
        accounts.delete_account(user["id"])
    except LookupError:
        raise HTTPException(status_code=500, detail="Failed to delete account")
    return {"success": True, "message": "Account deleted successfully"}


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(status: Optional[str] = Query(None), user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return [_book_model(b) for b in shelf.list_books(user["id"], status)]


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return _book_model(shelf.add_book(user["id"], **payload.model_dump()))


@app.get("/books/stats")
def book_stats(user: Dict[str, Any] = Depends(current_user)):
    return shelf.shelf_stats(user["id"])


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        book = shelf.get_book(book_id)
        if book.user_id != user["id"] and not social.can_view_profile(user["id"], book.user_id):
            raise PermissionError("This shelf is private")
        return _book_model(book)


@app.patch("/books/{book_id}", response_model=BookModel)
def update_book(book_id: str, payload: BookUpdateModel, user: Dict[str, Any] = Depends(current_user)):
    fields = payload.model_dump(exclude_unset=True)
    reset_completed = "completed_at" in fields
    completed_at = fields.pop("completed_at", None)
    with domain_errors():
        book = shelf.update_book(user["id"], book_id, **fields)
        if reset_completed:
            book = shelf.set_completed_at(user["id"], book_id, completed_at)
        return _book_model(book)


@app.delete("/books/{book_id}")
def delete_book(book_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        shelf.remove_book(user["id"], book_id)
    return {"success": True}


@app.post("/books/{book_id}/move", response_model=BookModel)
def move_book(book_id: str, payload: MoveBookRequest, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return _book_model(shelf.move_book(user["id"], book_id, payload.status))


# --- Shelf ---
@app.get("/shelf/settings")
def get_shelf_settings(user: Dict[str, Any] = Depends(current_user)):
    return shelf.get_settings(user["id"])


@app.patch("/shelf/settings")
def update_shelf_settings(payload: ShelfSettingsUpdate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return shelf.update_settings(user["id"], **payload.model_dump(exclude_unset=True))


@app.post("/shelf/share-id")
def regenerate_share_id(user: Dict[str, Any] = Depends(current_user)):
    return {"share_id": shelf.regenerate_share_id(user["id"])}


@app.get("/shelf/{share_id}")
def public_shelf(share_id: str):
    with domain_errors():
        return shelf.get_public_shelf(share_id)


# --- Profiles and users ---
@app.get("/profile")
def my_profile(user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return social.get_profile(user["id"], user["id"])


@app.patch("/profile")
def update_profile(payload: ProfileUpdate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return social.update_profile(user["id"], payload.username, payload.avatar_url)


@app.get("/profiles/{user_id}")
def get_profile(user_id: str, viewer: Optional[Dict[str, Any]] = Depends(optional_user)):
    with domain_errors():
        return social.get_profile(viewer["id"] if viewer else None, user_id)


@app.get("/users/find")
def find_users(q: str = Query(""), user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return {"results": social.find_user(user["id"], q)}


@app.post("/users/{user_id}/follow")
async def follow_user(user_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        created = social.follow(user["id"], user_id)
    if created and settings.enable_email_notifications:
        result = await notifier.notify_new_follower(user_id, user["id"])
        logger.info(f"New follower notification: {result.get('message')}")
    return {"following": True}


@app.delete("/users/{user_id}/follow")
def unfollow_user(user_id: str, user: Dict[str, Any] = Depends(current_user)):
    social.unfollow(user["id"], user_id)
    return {"following": False}


@app.get("/users/{user_id}/followers")
def followers(user_id: str, user: Dict[str, Any] = Depends(current_user)):
    return social.list_followers(user_id)


@app.get("/users/{user_id}/following")
def following(user_id: str, user: Dict[str, Any] = Depends(current_user)):
    return social.list_following(user_id)


# --- Likes, comments and notes ---
@app.post("/books/{book_id}/like")
def like_book(book_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        social.like_book(user["id"], book_id)
    return social.like_summary(book_id, user["id"])


@app.delete("/books/{book_id}/like")
def unlike_book(book_id: str, user: Dict[str, Any] = Depends(current_user)):
    social.unlike_book(user["id"], book_id)
    return social.like_summary(book_id, user["id"])


@app.get("/books/{book_id}/likes")
def book_likes(book_id: str, viewer: Optional[Dict[str, Any]] = Depends(optional_user)):
    return social.like_summary(book_id, viewer["id"] if viewer else None)


@app.get("/books/{book_id}/comments")
def list_comments(book_id: str):
    return social.list_comments(book_id)


@app.post("/books/{book_id}/comments", status_code=201)
def add_comment(book_id: str, payload: CommentCreate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return social.add_comment(user["id"], book_id, payload.content)


@app.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        social.delete_comment(user["id"], comment_id)
    return {"success": True}


@app.get("/books/{book_id}/note")
def get_note(book_id: str, viewer: Optional[Dict[str, Any]] = Depends(optional_user)):
    with domain_errors():
        return {"note": social.get_note(viewer["id"] if viewer else None, book_id)}


@app.put("/books/{book_id}/note")
def upsert_note(book_id: str, payload: NoteUpsert, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return {"note": social.upsert_note(user["id"], book_id, payload.content, payload.color)}


@app.delete("/books/{book_id}/note")
def delete_note(book_id: str, user: Dict[str, Any] = Depends(current_user)):
    social.delete_note(user["id"], book_id)
    return {"success": True}


# --- Recommendations and notifications ---
@app.get("/recommendations")
def list_recommendations(status: Optional[str] = Query(None), user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return social.list_recommendations(user["id"], status)


@app.post("/recommendations", status_code=201)
async def send_recommendation(payload: RecommendationCreate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        rec = social.send_recommendation(user["id"], **payload.model_dump())
    if settings.enable_email_notifications:
        result = await notifier.notify_book_recommendation(
            rec.get("from_username") or "Someone", rec["title"], rec["author"],
            recipient_user_id=rec["to_user_id"], message=rec.get("message"),
        )
        rec["emailSent"] = result["emailSent"]
    return rec


@app.post("/recommendations/{rec_id}/respond")
def respond_recommendation(rec_id: str, payload: RecommendationResponse,
                           user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return social.respond_recommendation(user["id"], rec_id, payload.accept)


@app.get("/notifications")
def notifications(user: Dict[str, Any] = Depends(current_user)):
    return social.notification_summary(user["id"])


@app.post("/notifications/seen")
def notifications_seen(payload: SeenRequest, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        social.mark_seen(user["id"], payload.kind)
    return {"success": True}


# --- Book clubs ---
@app.get("/clubs")
def list_clubs(user: Dict[str, Any] = Depends(current_user)):
    return clubs.list_clubs(user["id"])


@app.post("/clubs", status_code=201)
def create_club(payload: ClubCreate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.create_club(user["id"], payload.name, payload.description)


@app.get("/clubs/invite/{invite_code}")
def lookup_invite(invite_code: str):
    with domain_errors():
        return clubs.lookup_invite(invite_code)


@app.post("/clubs/join")
def join_club(payload: ClubJoin, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.join_club(user["id"], payload.invite_code)


@app.get("/clubs/{club_id}")
def get_club(club_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.get_club(user["id"], club_id)


@app.delete("/clubs/{club_id}")
def delete_club(club_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        clubs.delete_club(user["id"], club_id)
    return {"success": True}


@app.post("/clubs/{club_id}/leave")
def leave_club(club_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        clubs.leave_club(user["id"], club_id)
    return {"success": True}


@app.get("/clubs/{club_id}/members")
def club_members(club_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.list_members(user["id"], club_id)


@app.get("/clubs/{club_id}/suggestions")
def club_suggestions(club_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.list_suggestions(user["id"], club_id)


@app.post("/clubs/{club_id}/suggestions", status_code=201)
def suggest_book(club_id: str, payload: SuggestionCreate, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.suggest_book(user["id"], club_id, payload.title, payload.author, payload.cover_url)


@app.post("/suggestions/{suggestion_id}/vote")
def vote(suggestion_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        clubs.vote(user["id"], suggestion_id)
    return {"voted": True}


@app.delete("/suggestions/{suggestion_id}/vote")
def unvote(suggestion_id: str, user: Dict[str, Any] = Depends(current_user)):
    clubs.unvote(user["id"], suggestion_id)
    return {"voted": False}


@app.patch("/suggestions/{suggestion_id}/status")
def suggestion_status(suggestion_id: str, payload: SuggestionStatus, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.set_suggestion_status(user["id"], suggestion_id, payload.status)


@app.get("/suggestions/{suggestion_id}/reflections")
def list_reflections(suggestion_id: str, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.list_reflections(user["id"], suggestion_id)


@app.put("/suggestions/{suggestion_id}/reflections")
def upsert_reflection(suggestion_id: str, payload: ReflectionUpsert, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return clubs.upsert_reflection(
            user["id"], suggestion_id, payload.rating, payload.content, payload.is_anonymous
        )


# --- Functions: search and metadata ---
@app.post("/functions/book-search")
async def function_book_search(payload: QueryRequest, user: Dict[str, Any] = Depends(current_user)):
    return await book_search.search_books(payload.query)


@app.post("/functions/book-cache")
def function_book_cache(payload: CacheSearchRequest):
    return book_search.search_cache(payload.query, payload.isbn, payload.mode)


@app.post("/functions/isbndb-search")
async def function_isbndb_search(payload: ISBNdbSearchRequest):
    try:
        return await book_search.search_isbndb(payload.query, payload.isbn, payload.isbns, payload.mode)
    except ISBNdbAPIError as e:
        return JSONResponse(status_code=e.status_code or 500, content={"error": str(e), "items": []})


@app.post("/functions/enrich-book")
async def function_enrich_book(payload: EnrichRequest, user: Dict[str, Any] = Depends(current_user)):
    try:
        return await enricher.enrich_book(payload.title, payload.author)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})


@app.post("/functions/backfill-metadata")
async def function_backfill_metadata(user: Dict[str, Any] = Depends(current_user)):
    return await enricher.backfill_user_metadata(user["id"])


@app.post("/functions/backfill-all-metadata")
async def function_backfill_all_metadata(payload: Optional[BatchRequest] = None, caller: str = Depends(batch_caller)):
    logger.info(f"Backfill of all metadata triggered by {caller}")
    return await enricher.backfill_all_metadata(payload.limit if payload else None)


@app.post("/functions/isbndb-backfill")
async def function_isbndb_backfill(payload: Optional[BatchRequest] = None, caller: str = Depends(batch_caller)):
    logger.info(f"ISBNdb backfill triggered by {caller}")
    try:
        return await enricher.isbndb_backfill(payload.limit if payload else None)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/functions/refresh-covers")
async def function_refresh_covers(payload: Optional[RefreshCoversRequest] = None,
                                  user: Dict[str, Any] = Depends(current_user)):
    payload = payload or RefreshCoversRequest()
    return await enricher.refresh_covers(user["id"], payload.bookIds, payload.limit)


# --- Functions: AI and lists ---
@app.post("/functions/book-recommender")
async def function_book_recommender(payload: RecommenderRequest):
    if not settings.enable_ai_features:
        raise HTTPException(status_code=503, detail="AI features are disabled")
    try:
        return await AIService().recommend(payload.books, payload.mood)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except RateLimitExceeded as e:
        return JSONResponse(status_code=429, content={"error": str(e)})
    except CreditsExhausted as e:
        return JSONResponse(status_code=402, content={"error": str(e)})
    except AIServiceError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})


@app.post("/functions/generate-quote")
async def function_generate_quote():
    if not settings.enable_ai_features:
        raise HTTPException(status_code=503, detail="AI features are disabled")
    try:
        return await AIService().generate_quote()
    except RateLimitExceeded as e:
        return JSONResponse(status_code=429, content={"error": str(e)})
    except CreditsExhausted as e:
        return JSONResponse(status_code=402, content={"error": str(e)})
    except AIServiceError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})


@app.post("/functions/nyt-bestsellers")
async def function_nyt_bestsellers(payload: Optional[BestsellersRequest] = None):
    try:
        return await NYTBooksService().bestsellers(payload.listName if payload else None)
    except LookupError as e:
        return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
    except NYTAPIError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": str(e)})


# --- Functions: users and email ---
@app.post("/functions/find-user")
def function_find_user(payload: QueryRequest, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return {"results": social.find_user(user["id"], payload.query)}


@app.get("/functions/admin-users")
def function_admin_users(user: Dict[str, Any] = Depends(admin_user)):
    return {"users": accounts.list_users()}


@app.post("/functions/notify-book-recommendation")
async def function_notify_book_recommendation(payload: NotifyRecommendationRequest,
                                              user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return await notifier.notify_book_recommendation(
            payload.senderUsername, payload.bookTitle, payload.bookAuthor,
            recipient_user_id=payload.recipientUserId, recipient_email=payload.recipientEmail,
            message=payload.message,
        )


@app.post("/functions/notify-new-follower")
async def function_notify_new_follower(payload: NotifyFollowerRequest, user: Dict[str, Any] = Depends(current_user)):
    with domain_errors():
        return await notifier.notify_new_follower(payload.followingUserId, payload.followerUserId)


@app.post("/functions/send-invite")
async def function_send_invite(payload: InviteRequest, user: Dict[str, Any] = Depends(current_user)):
    try:
        with domain_errors():
            return await notifier.send_invite(payload.recipientEmail, payload.senderName, payload.shelfUrl)
    except EmailDeliveryError as e:
        logger.error(f"Invite email failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to send email")


@app.post("/functions/send-announcement")
async def function_send_announcement(payload: AnnouncementRequest, user: Dict[str, Any] = Depends(admin_user)):
    try:
        with domain_errors():
            return await notifier.send_announcement(payload.testEmail, payload.sendToAll)
    except EmailDeliveryError as e:
        logger.error(f"Announcement email failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
