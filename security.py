import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from database import CLIENTS, USERS, find_by_id, get_db
from errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

# pbkdf2_sha256 avoids the bcrypt backend quirks
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def verify_password(plain_password, hashed_password):
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # unknown or empty hash
        return False


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for_user(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "username": user["username"], "role": user["role"]})


def authenticate_user(db, username: str, password: str) -> dict:
    user = db[USERS].find_one({"username": username})
    if not user or not verify_password(password, user.get("password", "")):
        logger.warning("Failed login for %s", username)
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    if user.get("status", "active") != "active":
        raise ForbiddenError("Account is inactive. Please contact administrator.")
    return user


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = find_by_id(db, USERS, user_id)
    if not user:
        raise credentials_exception
    if user.get("status", "active") != "active":
        raise ForbiddenError("Account is inactive. Please contact administrator.")
    return user


def require_roles(*roles):
    def checker(current_user: dict = Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise ForbiddenError("Not enough permissions")
        return current_user

    return checker


def get_current_client(current_user: dict = Depends(require_roles("client")), db=Depends(get_db)):
    client = db[CLIENTS].find_one({"userId": str(current_user["_id"])})
    if not client:
        raise NotFoundError("Client not found")
    return client
