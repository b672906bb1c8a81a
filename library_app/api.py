import logging
import os
import re
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from library_app import covers, database
from library_app.accounts import AccountService, PasswordResetStore
from library_app.cart import CartService
from library_app.config import settings
from library_app.errors import AuthenticationError, ConflictError, LibraryError
from library_app.library import Library
from library_app.loans import LoanService
from library_app.logging_config import configure_logging
from library_app.purchases import PurchaseService
from library_app.user import User

logger = logging.getLogger(__name__)

library = Library()
accounts = AccountService()
password_resets = PasswordResetStore(accounts)
purchases = PurchaseService()
carts = CartService()
loans = LoanService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    database.initialize_database()
    logger.info("%s %s started (db: %s)", settings.app_name, settings.app_version, database.DATABASE_FILE)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- Middleware ---
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Never serve dumps, env files, model files or server sources from the static tree.
BLOCKED_PATH_RE = re.compile(
    r"(\.(sql|env|mwb)$)|(/\.env)|(server\.js$)|(^/node_modules)|(package-lock\.json$)", re.IGNORECASE
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    if BLOCKED_PATH_RE.search(request.url.path):
        return JSONResponse(status_code=404, content={"detail": "Not found"})
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error handling ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(OverflowError)
async def overflow_error_handler(request: Request, exc: OverflowError):
    # Ids beyond the SQLite integer range cannot name a row.
    return JSONResponse(status_code=404, content={"detail": "Not found"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = id(exc)
    logger.error(
        "Unhandled exception [%s] in %s %s: %s",
        error_id,
        request.method,
        request.url.path,
        exc,
        extra={"traceback": traceback.format_exc()},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": error_id},
    )


# --- Security ---
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_current_user(raw_user_id: Optional[str] = Security(user_id_header)) -> User:
    """Resolve the caller from the X-User-Id header."""
    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not 0 < user_id <= database.MAX_ROW_ID:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = accounts.find_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrators only")
    return user


def _target_user(current: User, user_id: Optional[int]) -> int:
    """The user an operation applies to; defaults to the caller."""
    target = current.id if user_id is None else user_id
    if not current.can_act_for(target):
        raise HTTPException(status_code=403, detail="Not authorized")
    return target


# --- Pydantic models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    description: Optional[str] = None
    available: bool
    purchase_stock: int
    rental_stock: int
    price: Optional[float] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    purchase_stock: Optional[float] = None
    rental_stock: Optional[float] = None
    stock: Optional[float] = Field(default=None, description="Default for both pools")
    price: Optional[float] = None
    category_id: Optional[int] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    purchase_stock: Optional[float] = None
    rental_stock: Optional[float] = None
    price: Optional[float] = None
    category_id: Optional[int] = None


class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role_id: Optional[int] = None
    role_name: Optional[str] = None


class RegisterModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginModel(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class SimpleAuthModel(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None


class ProfileUpdateModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class AdminUserModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role_id: Optional[int] = None


class RoleUpdateModel(BaseModel):
    role_id: int


class PasswordChangeModel(BaseModel):
    user_id: Optional[int] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class ForgotPasswordModel(BaseModel):
    email: Optional[str] = None


class ResetPasswordModel(BaseModel):
    email: Optional[str] = None
    code: Optional[str] = None
    new_password: Optional[str] = None


class PurchaseCreateModel(BaseModel):
    user_id: Optional[int] = None
    book_id: int
    price: Optional[float] = None


class CartAddModel(BaseModel):
    user_id: Optional[int] = None
    book_id: int
    quantity: Optional[float] = 1


class UserRefModel(BaseModel):
    user_id: Optional[int] = None


class LoanCreateModel(BaseModel):
    user_id: Optional[int] = None
    book_id: int
    quantity: Optional[float] = 1


class LoanReturnModel(BaseModel):
    user_id: int


class LoanModel(BaseModel):
    id: int
    user_id: int
    book_id: int
    title: Optional[str] = None
    author: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    loaned_on: str
    due_on: str
    returned_on: Optional[str] = None
    status: str
    extensions: int


class CoverUploadModel(BaseModel):
    title: Optional[str] = None
    data_url: Optional[str] = Field(default=None, alias="dataUrl")


class StatsModel(BaseModel):
    total_books: int
    available_books: int
    purchase_copies: int
    rental_copies: int
    total_users: int
    active_loans: int
    overdue_loans: int
    total_purchases: int
    revenue: float


# --- Health ---
@app.get("/api/health")
def health():
    return {"ok": True, "db": database.check_connection()}


# --- Catalog ---
@app.get("/api/books", response_model=List[BookModel])
def get_books(available: bool = Query(False, description="Only books with stock in either pool")):
    return [b.to_dict() for b in library.list_books(only_available=available)]


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return library.get_book(book_id).to_dict()


@app.get("/api/books/{book_id}/history")
def get_book_history(book_id: int, admin: User = Depends(get_admin_user)):
    library.get_book(book_id)
    return library.loan_history(book_id)


@app.get("/api/covers")
def get_covers():
    return covers.list_covers()


# --- Accounts ---
@app.post("/api/register", response_model=UserModel, status_code=201)
def register(payload: RegisterModel):
    return accounts.register(payload.name, payload.email, payload.password).to_dict()


@app.post("/api/login", response_model=UserModel)
def login(payload: LoginModel):
    return accounts.authenticate(payload.email, payload.password).to_dict()


@app.post("/api/auth/register", status_code=201)
def simple_register(payload: SimpleAuthModel):
    try:
        user = accounts.simple_register(payload.username, payload.password, payload.name)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    except ConflictError as e:
        return JSONResponse(status_code=409, content={"ok": False, "error": str(e)})
    return {"ok": True, "message": "Registration successful", "id": user.id, "username": user.email}


@app.post("/api/auth/login")
def simple_login(payload: SimpleAuthModel):
    try:
        user = accounts.authenticate(payload.username, payload.password)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    except AuthenticationError as e:
        return JSONResponse(status_code=401, content={"ok": False, "error": str(e)})
    return {"ok": True, "message": "Authentication successful", "user": user.to_dict()}


@app.get("/api/users/{user_id}", response_model=UserModel)
def get_user(user_id: int, current: User = Depends(get_current_user)):
    _target_user(current, user_id)
    return accounts.get_user(user_id).to_dict()


@app.patch("/api/users/{user_id}", response_model=UserModel)
def update_user(user_id: int, payload: ProfileUpdateModel, current: User = Depends(get_current_user)):
    _target_user(current, user_id)
    return accounts.update_profile(user_id, name=payload.name, email=payload.email).to_dict()


@app.post("/api/users/{user_id}/password")
def change_password(user_id: int, payload: PasswordChangeModel, current: User = Depends(get_current_user)):
    if payload.user_id is None or payload.user_id != user_id:
        raise HTTPException(status_code=400, detail="invalid user_id")
    _target_user(current, user_id)
    accounts.change_password(user_id, payload.current_password, payload.new_password)
    return {"ok": True}


@app.post("/api/password/forgot")
def forgot_password(payload: ForgotPasswordModel):
    issued = password_resets.request(payload.email)
    # Unknown addresses get the same answer, minus the code.
    if issued is None:
        return {"ok": True}
    code, ttl = issued
    return {"ok": True, "demo_code": code, "expires_in_seconds": ttl}


@app.post("/api/password/reset")
def reset_password(payload: ResetPasswordModel):
    password_resets.reset(payload.email, payload.code, payload.new_password)
    return {"ok": True}


# --- Purchases & cart ---
@app.get("/api/purchases")
def get_purchases(user_id: Optional[int] = None, current: User = Depends(get_current_user)):
    return purchases.list_purchases(_target_user(current, user_id))


@app.post("/api/purchases", status_code=201)
def create_purchase(payload: PurchaseCreateModel, current: User = Depends(get_current_user)):
    user_id = _target_user(current, payload.user_id)
    purchase_id = purchases.purchase(user_id, payload.book_id, payload.price)
    return {"ok": True, "id": purchase_id}


@app.get("/api/cart")
def get_cart(user_id: Optional[int] = None, current: User = Depends(get_current_user)):
    return carts.list_items(_target_user(current, user_id))


@app.post("/api/cart")
def add_to_cart(payload: CartAddModel, current: User = Depends(get_current_user)):
    user_id = _target_user(current, payload.user_id)
    quantity = carts.add_item(user_id, payload.book_id, payload.quantity)
    return {"ok": True, "book_id": payload.book_id, "quantity": quantity}


@app.post("/api/cart/checkout")
def checkout(payload: UserRefModel, current: User = Depends(get_current_user)):
    result = carts.checkout(_target_user(current, payload.user_id))
    return {"ok": True, "purchases": result.purchase_count, "total": result.total}


@app.delete("/api/cart/{book_id}")
def remove_from_cart(book_id: int, user_id: Optional[int] = None, current: User = Depends(get_current_user)):
    carts.remove_item(_target_user(current, user_id), book_id)
    return {"ok": True}


# --- Loans ---
@app.get("/api/loans", response_model=List[LoanModel])
def get_loans(user_id: Optional[int] = None, current: User = Depends(get_current_user)):
    return [loan.to_dict() for loan in loans.list_loans(_target_user(current, user_id))]


@app.post("/api/loans", status_code=201)
def create_loan(payload: LoanCreateModel, current: User = Depends(get_current_user)):
    user_id = _target_user(current, payload.user_id)
    loan_ids = loans.create_loan(user_id, payload.book_id, payload.quantity)
    return {"ok": True, "quantity": len(loan_ids), "loan_ids": loan_ids}


@app.post("/api/loans/{loan_id}/extend", response_model=LoanModel)
def extend_loan(loan_id: int, payload: Optional[UserRefModel] = None, current: User = Depends(get_current_user)):
    if payload is not None:
        _target_user(current, payload.user_id)
    return loans.extend_loan(loan_id, current).to_dict()


@app.post("/api/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, payload: LoanReturnModel, admin: User = Depends(get_admin_user)):
    return loans.return_loan(loan_id, payload.user_id).to_dict()


# --- Admin ---
@app.get("/api/admin/categories")
def admin_categories(admin: User = Depends(get_admin_user)):
    return library.list_categories()


@app.get("/api/admin/books", response_model=List[BookModel])
def admin_books(admin: User = Depends(get_admin_user)):
    return [b.to_dict() for b in library.list_books()]


@app.post("/api/admin/books", response_model=BookModel, status_code=201)
def admin_create_book(payload: BookCreateModel, admin: User = Depends(get_admin_user)):
    return library.create_book(payload.model_dump()).to_dict()


@app.patch("/api/admin/books/{book_id}", response_model=BookModel)
def admin_update_book(book_id: int, payload: BookUpdateModel, admin: User = Depends(get_admin_user)):
    return library.update_book(book_id, payload.model_dump(exclude_unset=True)).to_dict()


@app.delete("/api/admin/books/{book_id}")
def admin_delete_book(book_id: int, admin: User = Depends(get_admin_user)):
    library.delete_book(book_id)
    return {"ok": True}


@app.get("/api/admin/users", response_model=List[UserModel])
def admin_users(admin: User = Depends(get_admin_user)):
    return [u.to_dict() for u in accounts.list_users()]


@app.post("/api/admin/users", response_model=UserModel, status_code=201)
def admin_create_user(payload: AdminUserModel, admin: User = Depends(get_admin_user)):
    return accounts.create_user(payload.name, payload.email, payload.password, payload.role_id).to_dict()


@app.patch("/api/admin/users/{user_id}", response_model=UserModel)
def admin_update_user(user_id: int, payload: AdminUserModel, admin: User = Depends(get_admin_user)):
    return accounts.admin_update_user(
        user_id, name=payload.name, email=payload.email, password=payload.password
    ).to_dict()


@app.patch("/api/admin/users/{user_id}/role", response_model=UserModel)
def admin_change_role(user_id: int, payload: RoleUpdateModel, admin: User = Depends(get_admin_user)):
    accounts.change_role(admin, user_id, payload.role_id)
    return accounts.get_user(user_id).to_dict()


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: int, admin: User = Depends(get_admin_user)):
    accounts.delete_user(admin, user_id)
    return {"ok": True}


@app.get("/api/admin/loans", response_model=List[LoanModel])
def admin_loans(q: Optional[str] = Query(None, description="Borrower name or e-mail"),
                admin: User = Depends(get_admin_user)):
    return [loan.to_dict() for loan in loans.list_all_loans(q)]


@app.get("/api/admin/stats", response_model=StatsModel)
def admin_stats(admin: User = Depends(get_admin_user)):
    return library.get_statistics()


@app.post("/api/admin/covers", status_code=201)
def admin_upload_cover(payload: CoverUploadModel, admin: User = Depends(get_admin_user)) -> Dict[str, Any]:
    file_name = covers.save_cover(payload.title, payload.data_url)
    return {"ok": True, "file": file_name}


# --- Static files ---
if os.path.isdir(settings.static_dir):
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
