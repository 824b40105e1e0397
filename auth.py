"""Identity & role layer: password hashing, JWT issuance and verification,
and the role guard used by every protected route."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field, TypeAdapter
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import errors
from database import create_document, serialize, to_object_id
from schemas import Account, RegisterRequest, Role

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


# ------------------ Identity (tagged by role) ------------------

class ResidentIdentity(BaseModel):
    role: Literal["resident"] = "resident"
    id: str


class BusinessIdentity(BaseModel):
    role: Literal["business"] = "business"
    id: str


class CollectorIdentity(BaseModel):
    role: Literal["collector"] = "collector"
    id: str
    profile_id: Optional[str] = None


Identity = Annotated[
    Union[ResidentIdentity, BusinessIdentity, CollectorIdentity],
    Field(discriminator="role"),
]
_identity_adapter = TypeAdapter(Identity)


def rooms_for(identity: Identity):
    """Real-time rooms a session with this identity joins."""
    rooms = [f"user:{identity.id}"]
    if identity.role in ("business", "collector"):
        rooms.append(f"{identity.role}:{identity.id}")
    return rooms


# ------------------ Password & token helpers ------------------

def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: Optional[str]) -> Dict[str, Any]:
    """Check a bearer token without touching storage."""
    if not token:
        raise errors.Unauthenticated()
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise errors.InvalidCredential()
    if not payload.get("sub") or payload.get("role") not in ("resident", "business", "collector"):
        raise errors.InvalidCredential()
    return payload


def public_account(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize(doc)
    user.pop("password_hash", None)
    return user


# ------------------ Service ------------------

class AuthService:
    def __init__(self, db: Database):
        self.accounts = db["account"]
        self.profiles = db["collector_profile"]
        self._db = db

    def register(self, body: RegisterRequest) -> Dict[str, Any]:
        email = body.email.lower()
        if self.accounts.find_one({"email": email}):
            raise errors.DuplicateEmail()
        account = Account(
            name=body.name,
            email=email,
            password_hash=get_password_hash(body.password),
            phone=body.phone,
            role=body.role,
        )
        if body.location:
            account.location = body.location.to_geojson()
        try:
            uid = create_document(self._db, "account", account)
        except DuplicateKeyError:
            raise errors.DuplicateEmail()
        logger.info("Registered %s account %s", body.role, uid)
        doc = self.accounts.find_one({"_id": to_object_id(uid)})
        return {"token": create_access_token({"sub": uid, "role": body.role}), "user": public_account(doc)}

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.accounts.find_one({"email": email.lower()})
        if not user or not verify_password(password, user.get("password_hash")):
            raise errors.InvalidCredential("Invalid credentials")
        token = create_access_token({"sub": str(user["_id"]), "role": user["role"]})
        logger.info("Login for account %s", user["_id"])
        return {"token": token, "user": public_account(user)}

    def authenticate(self, token: Optional[str]) -> Identity:
        payload = decode_token(token)
        oid = to_object_id(payload["sub"])
        if oid is None:
            raise errors.InvalidCredential()
        account = self.accounts.find_one({"_id": oid}, {"role": 1})
        if not account:
            raise errors.UnknownSubject()
        return _identity_adapter.validate_python({"id": str(oid), "role": account["role"]})

    def authorize_role(self, identity: Identity, *required: Role) -> Identity:
        if identity.role not in required:
            raise errors.Forbidden("Insufficient permissions")
        if isinstance(identity, CollectorIdentity):
            profile = self.profiles.find_one({"account_id": identity.id}, {"_id": 1})
            if not profile:
                raise errors.ProfileNotFound()
            identity = identity.model_copy(update={"profile_id": str(profile["_id"])})
        return identity

    def get_account(self, identity: Identity) -> Dict[str, Any]:
        doc = self.accounts.find_one({"_id": to_object_id(identity.id)})
        if not doc:
            raise errors.UnknownSubject()
        return public_account(doc)


# ------------------ FastAPI dependencies ------------------

def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                     auth: AuthService = Depends(get_auth_service)) -> Identity:
    token = credentials.credentials if credentials else None
    return auth.authenticate(token)


def require_role(*required: Role):
    def wrapper(user=Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
        return auth.authorize_role(user, *required)
    return wrapper
