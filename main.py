import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import create_document, ensure_indexes, get_db, get_documents, utcnow
from schemas import (
    ROLES,
    NonBlankStr,
    Order as OrderSchema,
    Score,
    User as UserSchema,
    UserAddress,
)

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Ensuring database indexes...")
    ensure_indexes(get_db())
    yield
    logger.info("Shutting down application...")


# App and CORS
app = FastAPI(title="Pintxopote API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auth setup
TOKEN_SECRET = os.getenv("TOKEN_SECRET", "pintxopote-dev-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 24 * 60

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth")


# Envelope

def ok(data: Any = None) -> Dict:
    body: Dict[str, Any] = {"status": "OK"}
    if data is not None:
        body["data"] = data
    return body


def ko(status_code: int, error: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "KO", "error": error}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return ko(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return ko(status.HTTP_400_BAD_REQUEST, "invalid request")
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return ko(status.HTTP_400_BAD_REQUEST, message)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    email = (exc.details or {}).get("keyValue", {}).get("email")
    if email:
        return ko(status.HTTP_409_CONFLICT, f"user with email {email} already exists")
    return ko(status.HTTP_409_CONFLICT, "duplicate key")


# Helpers

def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"invalid id {id_str}")


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def sanitize_user(doc: Dict) -> Dict:
    d = sanitize(doc)
    d.pop("password", None)
    return d


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        # Not a hash this context knows about
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, TOKEN_SECRET, algorithm=ALGORITHM)


def normalize_roles(role: Union[str, List[str], None]) -> List[str]:
    if role is None:
        return ["user"]
    roles = [role] if isinstance(role, str) else list(role)
    for r in roles:
        if r not in ROLES:
            raise HTTPException(status_code=400, detail=f"user role `{r}` is not a valid value")
    return roles or ["user"]


def day_bounds(now: datetime):
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def score_ratio(deal: Dict) -> float:
    return Score(**(deal.get("score") or {})).ratio


async def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="invalid token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, TOKEN_SECRET, algorithms=[ALGORITHM])
        user_id: str = payload.get("id")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    if not ObjectId.is_valid(user_id):
        raise credentials_exception
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise credentials_exception
    return sanitize_user(user)


def require_self(user_id: str, current_user: Dict) -> None:
    if current_user["id"] != user_id:
        raise HTTPException(status_code=403, detail="user id does not match token")


def require_role(*roles: str):
    async def role_dep(current_user=Depends(get_current_user)):
        if not any(r in roles for r in current_user.get("role", [])):
            raise HTTPException(status_code=403, detail=f"user is not a {' or '.join(roles)}")
        return current_user
    return role_dep


# Request Models
class RegisterRequest(BaseModel):
    name: NonBlankStr
    surname: NonBlankStr
    email: EmailStr
    password: NonBlankStr
    role: Optional[Union[str, List[str]]] = None
    address: Optional[UserAddress] = None

class AuthRequest(BaseModel):
    # EmailStr normalizes the same way as at registration
    email: EmailStr
    password: str

class UpdateUserRequest(BaseModel):
    name: NonBlankStr
    surname: NonBlankStr
    email: EmailStr
    newEmail: Optional[EmailStr] = None
    password: Optional[NonBlankStr] = None
    address: Optional[UserAddress] = None

class CreateOrderRequest(BaseModel):
    user: str
    pintxopote: str
    quantity: int = Field(..., ge=1)


# User Routes
@app.post("/users", status_code=status.HTTP_201_CREATED)
def register_user(payload: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail=f"user with email {payload.email} already exists")
    user = UserSchema(
        name=payload.name,
        surname=payload.surname,
        email=payload.email,
        password=hash_password(payload.password),
        role=normalize_roles(payload.role),
        address=payload.address,
    )
    uid = create_document(db, user)
    logger.info("Registered user %s (%s)", uid, ",".join(user.role))
    return ok()

@app.post("/auth")
def authenticate_user(payload: AuthRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password", "")):
        logger.info("Authentication failed for %s", payload.email)
        raise HTTPException(status_code=401, detail="wrong credentials")
    uid = str(user["_id"])
    token = create_access_token({"id": uid})
    return ok({"id": uid, "role": user.get("role", ["user"]), "token": token})

@app.get("/users/{user_id}")
def retrieve_user(user_id: str, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    oid = to_obj_id(user_id)
    require_self(user_id, current_user)
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail=f"user with id {user_id} not found")
    return ok(sanitize_user(user))

@app.put("/users/{user_id}")
def update_user(user_id: str, payload: UpdateUserRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    oid = to_obj_id(user_id)
    require_self(user_id, current_user)
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail=f"user with id {user_id} not found")
    if user.get("email") != payload.email:
        raise HTTPException(status_code=401, detail="wrong credentials")
    changes: Dict[str, Any] = {"name": payload.name, "surname": payload.surname}
    if payload.newEmail and payload.newEmail != user["email"]:
        if db["user"].find_one({"email": payload.newEmail}):
            raise HTTPException(status_code=409, detail=f"user with email {payload.newEmail} already exists")
        changes["email"] = payload.newEmail
    if payload.password:
        changes["password"] = hash_password(payload.password)
    if payload.address is not None:
        changes["address"] = payload.address.model_dump()
    db["user"].update_one({"_id": oid}, {"$set": changes})
    return ok()


# Pintxopote and Pub Routes
@app.get("/pintxopotes")
def list_pintxopotes_by_city(city: str = Query(..., min_length=1), db: Database = Depends(get_db)):
    pubs = db["pub"].find({"address.city": {"$regex": f"^{re.escape(city.strip())}$", "$options": "i"}})
    pub_ids = [str(p["_id"]) for p in pubs]
    if not pub_ids:
        return ok([])
    start, end = day_bounds(utcnow())
    deals = get_documents(db, "pintxopote", {"pub": {"$in": pub_ids}, "date": {"$gte": start, "$lt": end}})
    deals.sort(key=score_ratio, reverse=True)
    return ok([sanitize(d) for d in deals])

@app.get("/pintxopotes/{pintxopote_id}")
def get_pintxopote(pintxopote_id: str, db: Database = Depends(get_db)):
    d = db["pintxopote"].find_one({"_id": to_obj_id(pintxopote_id)})
    if not d:
        raise HTTPException(status_code=404, detail=f"pintxopote with id {pintxopote_id} not found")
    return ok(sanitize(d))

@app.get("/pubs/{pub_id}")
def get_pub(pub_id: str, db: Database = Depends(get_db)):
    p = db["pub"].find_one({"_id": to_obj_id(pub_id)})
    if not p:
        raise HTTPException(status_code=404, detail=f"pub with id {pub_id} not found")
    pub = sanitize(p)
    ids = [ObjectId(i) for i in pub.get("pintxopotes", []) if ObjectId.is_valid(i)]
    deals = {str(d["_id"]): sanitize(d) for d in db["pintxopote"].find({"_id": {"$in": ids}})} if ids else {}
    # keep the pub's own ordering
    pub["pintxopotes"] = [deals[str(i)] for i in ids if str(i) in deals]
    return ok(pub)

@app.get("/pubs/{pub_id}/pintxopotes")
def list_pintxopotes_by_pub(pub_id: str, db: Database = Depends(get_db)):
    if not db["pub"].find_one({"_id": to_obj_id(pub_id)}):
        raise HTTPException(status_code=404, detail=f"pub with id {pub_id} not found")
    deals = db["pintxopote"].find({"pub": pub_id}).sort([("date", -1)])
    return ok([sanitize(d) for d in deals])


# Order Routes
@app.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(payload: CreateOrderRequest, current_user=Depends(get_current_user), db: Database = Depends(get_db)):
    require_self(payload.user, current_user)
    if not db["pintxopote"].find_one({"_id": to_obj_id(payload.pintxopote)}):
        raise HTTPException(status_code=404, detail=f"pintxopote with id {payload.pintxopote} not found")
    order = OrderSchema(user=payload.user, pintxopote=payload.pintxopote, quantity=payload.quantity, date=utcnow())
    oid = create_document(db, order)
    logger.info("Order %s: %d x %s for user %s", oid, order.quantity, order.pintxopote, order.user)
    return ok({"id": oid, **order.model_dump()})

@app.get("/orders")
def list_orders(
    userId: Optional[str] = None,
    pintxopoteId: Optional[str] = None,
    current_user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if bool(userId) == bool(pintxopoteId):
        raise HTTPException(status_code=400, detail="userId or pintxopoteId is required")
    if userId:
        require_self(userId, current_user)
        q = {"user": userId}
    else:
        if "pub" not in current_user.get("role", []):
            raise HTTPException(status_code=403, detail="user is not a pub")
        q = {"pintxopote": pintxopoteId}
    orders = db["order"].find(q).sort([("date", -1)])
    return ok([sanitize(o) for o in orders])

@app.put("/orders/{order_id}/validate")
def validate_order(order_id: str, current_pub=Depends(require_role("pub")), db: Database = Depends(get_db)):
    res = db["order"].update_one({"_id": to_obj_id(order_id)}, {"$set": {"validated": True}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail=f"order with id {order_id} not found")
    logger.info("Order %s validated by %s", order_id, current_pub["id"])
    return ok()


# Utility endpoints
@app.get("/")
def root():
    return ok({"name": "Pintxopote API"})

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
