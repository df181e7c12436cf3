from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, Request, status, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.security import OAuth2PasswordRequestForm
from typing import Optional, List
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import ValidationError
from datetime import datetime, timedelta

from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, FRONTEND_URL
from database import MongoRepository, ensure_indexes
from engine import LendingEngine
from errors import Conflict, InvalidInput, LendingError, NotFound
from logger import get_logger
from repository import Repository
from schemas import (
    AccessDecision,
    Connection,
    Item,
    ItemWithOwnerSummary,
    Loan,
    LoanRequest,
    LoanRequestView,
    LoanStatus,
    LoanView,
    RequestStatus,
    TrustRequest,
    User,
    UserSummary,
)

logger = get_logger("trustshelf.api")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

_repository: Repository | None = None


def get_repository() -> Repository:
    global _repository
    if _repository is None:
        _repository = MongoRepository()
    return _repository


def get_engine(repo: Repository = Depends(get_repository)) -> LendingEngine:
    return LendingEngine(repo)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ensure_indexes()
    yield


app = FastAPI(title="Trust Shelf Lending API", lifespan=lifespan)

# CORS
origins = [
    FRONTEND_URL,
    "*",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Utils

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


async def _user_for_token(token: str, engine: LendingEngine) -> Optional[User]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return await engine.repo.get_user(user_id)


async def get_user_from_token(token: str = Depends(oauth2_scheme),
                              engine: LendingEngine = Depends(get_engine)) -> User:
    user = await _user_for_token(token, engine)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme),
                            engine: LendingEngine = Depends(get_engine)) -> Optional[User]:
    if not token:
        return None
    return await _user_for_token(token, engine)


def parse_date(value: Optional[str], field: str, required: bool = True) -> Optional[datetime]:
    if value is None or value == "":
        if required:
            raise InvalidInput(f"{field} is required")
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidInput(f"{field} must be an ISO date", {field: value})


def _user_out(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "avatar_url": user.avatar_url}


def _token_response(user: User) -> dict:
    token = create_access_token({"sub": user.id})
    return {"access_token": token, "token_type": "bearer", "user": _user_out(user)}


# Auth endpoints

@app.post("/auth/register")
async def register(name: str = Form(...), email: str = Form(...), password: str = Form(...),
                   engine: LendingEngine = Depends(get_engine)):
    existing = await engine.repo.get_user_by_email(email.lower())
    if existing:
        raise Conflict("Email already registered", {"email": email.lower()})
    try:
        new_user = User(name=name, email=email.lower(), password=pwd_context.hash(password))
    except ValidationError:
        raise InvalidInput("Invalid email address", {"email": email})
    user = await engine.repo.insert_user(new_user)
    logger.info(f"user registered id={user.id}")
    return _token_response(user)


@app.post("/auth/login")
async def login(form_data: OAuth2PasswordRequestForm = Depends(), engine: LendingEngine = Depends(get_engine)):
    user = await engine.repo.get_user_by_email(form_data.username.lower())
    if not user or not pwd_context.verify(form_data.password, user.password or ""):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    return _token_response(user)


# Users

@app.get("/users/me")
async def me(current_user: User = Depends(get_user_from_token)):
    return _user_out(current_user)


@app.put("/users/me")
async def update_me(name: Optional[str] = Form(None), avatar_url: Optional[str] = Form(None),
                    current_user: User = Depends(get_user_from_token),
                    engine: LendingEngine = Depends(get_engine)):
    updates = {k: v for k, v in {"name": name, "avatar_url": avatar_url}.items() if v is not None}
    user = await engine.repo.update_user(current_user.id, updates) if updates else current_user
    return _user_out(user)


@app.get("/users/search", response_model=List[UserSummary])
async def search_users(q: Optional[str] = None, current_user: User = Depends(get_user_from_token),
                       engine: LendingEngine = Depends(get_engine)):
    if not q or not q.strip():
        return []
    users = await engine.repo.search_users(q.strip())
    return [UserSummary.from_user(u, u.id) for u in users if u.id != current_user.id]


@app.get("/users/connections", response_model=List[Connection])
async def my_connections(current_user: User = Depends(get_user_from_token),
                         engine: LendingEngine = Depends(get_engine)):
    return await engine.trust.list_connections(current_user.id)


@app.get("/users/{user_id}", response_model=UserSummary)
async def get_user(user_id: str, current_user: User = Depends(get_user_from_token),
                   engine: LendingEngine = Depends(get_engine)):
    user = await engine.repo.get_user(user_id)
    if not user:
        raise NotFound("User not found", {"user_id": user_id})
    return UserSummary.from_user(user, user_id)


# Items

@app.get("/items", response_model=List[ItemWithOwnerSummary])
async def list_items(current_user: User = Depends(get_user_from_token), engine: LendingEngine = Depends(get_engine)):
    return await engine.visibility.visible_items(current_user.id)


@app.get("/items/search", response_model=List[ItemWithOwnerSummary])
async def search_items(q: Optional[str] = None, current_user: User = Depends(get_user_from_token),
                       engine: LendingEngine = Depends(get_engine)):
    return await engine.visibility.search_items(current_user.id, q or "")


@app.get("/items/my", response_model=List[Item])
async def my_items(current_user: User = Depends(get_user_from_token), engine: LendingEngine = Depends(get_engine)):
    return await engine.items.my_items(current_user.id)


@app.get("/items/my/search", response_model=List[Item])
async def search_my_items(q: Optional[str] = None, current_user: User = Depends(get_user_from_token),
                          engine: LendingEngine = Depends(get_engine)):
    return await engine.items.search_my_items(current_user.id, q or "")


@app.post("/items", response_model=Item)
async def create_item(
    title: str = Form(...),
    category: str = Form(...),
    required_trust_level: int = Form(...),
    description: Optional[str] = Form(None),
    hidden: bool = Form(False),
    image_url: Optional[str] = Form(None),
    current_user: User = Depends(get_user_from_token),
    engine: LendingEngine = Depends(get_engine),
):
    return await engine.items.create_item(
        current_user.id,
        title=title,
        category=category,
        required_trust_level=required_trust_level,
        description=description or "",
        hidden=hidden,
        image_url=image_url,
    )


@app.get("/items/{item_id}", response_model=ItemWithOwnerSummary)
async def get_item(item_id: str, current_user: User = Depends(get_user_from_token),
                   engine: LendingEngine = Depends(get_engine)):
    return await engine.items.get_item(item_id, current_user.id)


@app.put("/items/{item_id}", response_model=Item)
async def update_item(
    item_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    required_trust_level: Optional[int] = Form(None),
    hidden: Optional[bool] = Form(None),
    image_url: Optional[str] = Form(None),
    current_user: User = Depends(get_user_from_token),
    engine: LendingEngine = Depends(get_engine),
):
    return await engine.items.update_item(
        item_id,
        current_user.id,
        title=title,
        description=description,
        category=category,
        required_trust_level=required_trust_level,
        hidden=hidden,
        image_url=image_url,
    )


@app.delete("/items/{item_id}")
async def delete_item(item_id: str, current_user: User = Depends(get_user_from_token),
                      engine: LendingEngine = Depends(get_engine)):
    await engine.items.delete_item(item_id, current_user.id)
    return {"ok": True}


@app.get("/items/{item_id}/access", response_model=AccessDecision, response_model_exclude_none=True)
async def scan_item(item_id: str, current_user: Optional[User] = Depends(get_optional_user),
                    engine: LendingEngine = Depends(get_engine)):
    return await engine.access.decide(current_user.id if current_user else None, item_id)


@app.get("/items/{item_id}/loan-requests", response_model=List[LoanRequest])
async def item_loan_requests(item_id: str, current_user: User = Depends(get_user_from_token),
                             engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.for_item(item_id, current_user.id)


# Trust

@app.post("/trust")
async def set_trust(trustee_id: str = Form(...), level: int = Form(...),
                    current_user: User = Depends(get_user_from_token),
                    engine: LendingEngine = Depends(get_engine)):
    if await engine.repo.get_user(trustee_id) is None:
        raise NotFound("User not found", {"user_id": trustee_id})
    edge = await engine.trust.set_trust(current_user.id, trustee_id, level)
    return {"trustee_id": edge.trustee_id, "level": edge.level, "updated_at": edge.updated_at}


@app.get("/trust/{trustee_id}")
async def get_trust(trustee_id: str, current_user: User = Depends(get_user_from_token),
                    engine: LendingEngine = Depends(get_engine)):
    return {"trustee_id": trustee_id, "level": await engine.trust.get_trust(current_user.id, trustee_id)}


@app.post("/trust-requests", response_model=TrustRequest)
async def request_trust(target_id: str = Form(...), message: Optional[str] = Form(None),
                        current_user: User = Depends(get_user_from_token),
                        engine: LendingEngine = Depends(get_engine)):
    return await engine.trust_requests.request(current_user.id, target_id, message)


@app.get("/trust-requests/received", response_model=List[TrustRequest])
async def trust_requests_received(pending_only: bool = False, current_user: User = Depends(get_user_from_token),
                                  engine: LendingEngine = Depends(get_engine)):
    return await engine.trust_requests.received(current_user.id, pending_only=pending_only)


@app.get("/trust-requests/sent", response_model=List[TrustRequest])
async def trust_requests_sent(current_user: User = Depends(get_user_from_token),
                              engine: LendingEngine = Depends(get_engine)):
    return await engine.trust_requests.sent(current_user.id)


@app.post("/trust-requests/{request_id}/deny", response_model=TrustRequest)
async def deny_trust_request(request_id: str, current_user: User = Depends(get_user_from_token),
                             engine: LendingEngine = Depends(get_engine)):
    return await engine.trust_requests.deny(request_id, current_user.id)


# Loan requests

@app.post("/loan-requests", response_model=LoanRequest)
async def create_loan_request(item_id: str = Form(...), start_date: str = Form(...), end_date: str = Form(...),
                              message: Optional[str] = Form(None),
                              current_user: User = Depends(get_user_from_token),
                              engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.create(
        current_user.id,
        item_id,
        parse_date(start_date, "start_date"),
        parse_date(end_date, "end_date"),
        message,
    )


@app.get("/loan-requests/my", response_model=List[LoanRequestView])
async def my_loan_requests(current_user: User = Depends(get_user_from_token),
                           engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.sent(current_user.id)


@app.get("/loan-requests/received", response_model=List[LoanRequestView])
async def received_loan_requests(status_filter: Optional[RequestStatus] = Query(None, alias="status"),
                                 current_user: User = Depends(get_user_from_token),
                                 engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.received(current_user.id, status=status_filter)


@app.post("/loan-requests/{request_id}/approve", response_model=Loan)
async def approve_loan_request(request_id: str, current_user: User = Depends(get_user_from_token),
                               engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.approve(request_id, current_user.id)


@app.post("/loan-requests/{request_id}/deny", response_model=LoanRequest)
async def deny_loan_request(request_id: str, current_user: User = Depends(get_user_from_token),
                            engine: LendingEngine = Depends(get_engine)):
    return await engine.loan_requests.deny(request_id, current_user.id)


# Loans

@app.post("/loans", response_model=Loan)
async def lend_directly(item_id: str = Form(...), borrower_id: str = Form(...), start_date: str = Form(...),
                        end_date: str = Form(...), notes: Optional[str] = Form(None),
                        current_user: User = Depends(get_user_from_token),
                        engine: LendingEngine = Depends(get_engine)):
    return await engine.loans.create_direct(
        current_user.id,
        borrower_id,
        item_id,
        parse_date(start_date, "start_date"),
        parse_date(end_date, "end_date"),
        notes,
    )


@app.get("/loans/my-borrowed", response_model=List[LoanView])
async def loans_borrowed(status_filter: Optional[LoanStatus] = Query(None, alias="status"),
                         current_user: User = Depends(get_user_from_token),
                         engine: LendingEngine = Depends(get_engine)):
    return await engine.loans.loans_borrowed(current_user.id, status=status_filter)


@app.get("/loans/my-lent", response_model=List[LoanView])
async def loans_lent(status_filter: Optional[LoanStatus] = Query(None, alias="status"),
                     current_user: User = Depends(get_user_from_token),
                     engine: LendingEngine = Depends(get_engine)):
    return await engine.loans.loans_lent(current_user.id, status=status_filter)


@app.post("/loans/{loan_id}/return", response_model=Loan)
async def return_loan(loan_id: str, actual_end_date: Optional[str] = Form(None),
                      current_user: User = Depends(get_user_from_token),
                      engine: LendingEngine = Depends(get_engine)):
    ended = parse_date(actual_end_date, "actual_end_date", required=False)
    return await engine.loans.mark_returned(loan_id, current_user.id, ended)


@app.put("/loans/{loan_id}/notes", response_model=Loan)
async def update_loan_notes(loan_id: str, notes: Optional[str] = Form(None),
                            current_user: User = Depends(get_user_from_token),
                            engine: LendingEngine = Depends(get_engine)):
    return await engine.loans.update_notes(loan_id, current_user.id, notes)


@app.get("/health")
async def health(engine: LendingEngine = Depends(get_engine)):
    await engine.repo.ping()
    return {"ok": True, "message": "Database connected"}
