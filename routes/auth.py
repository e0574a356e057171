from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
import logging
import os

from models.user import Role
from database import users_collection
from routes.errors import to_http_exception
from services.exceptions import AdminRequired, AuthenticationFailed

load_dotenv()

security = HTTPBearer()

# Tokens are issued by the identity provider; this service only verifies them
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-here")
ALGORITHM = "HS256"

logger = logging.getLogger(__name__)


def token_subject(token: str) -> ObjectId:
    """User id carried in the bearer token's `sub` claim."""
    try:
        subject = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM]).get("sub")
        if subject is None:
            raise AuthenticationFailed()
        return ObjectId(subject)
    except (JWTError, InvalidId, TypeError):
        raise AuthenticationFailed()


def require_admin(user: dict) -> dict:
    if user.get("role") != Role.ADMIN:
        logger.warning(f"User {user.get('_id')} tried to reach an admin endpoint")
        raise AdminRequired()
    return user


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        user = await users_collection.find_one({"_id": token_subject(credentials.credentials)})
        if user is None:
            raise AuthenticationFailed()
    except AuthenticationFailed as e:
        raise to_http_exception(e)
    return user


async def get_current_admin_user(current_user: dict = Depends(get_current_user)):
    try:
        return require_admin(current_user)
    except AdminRequired as e:
        raise to_http_exception(e)
