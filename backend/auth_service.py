"""Customer authentication using JWT"""
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv
import jwt
from pydantic import BaseModel

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

JWT_SECRET = (os.environ.get('JWT_SECRET') or '').strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is required")

JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24


class CustomerToken(BaseModel):
    customer_id: str
    customer_name: Optional[str] = None
    exp: datetime


def create_access_token(customer_id: str, customer_name: str = None) -> str:
    """Create a JWT access token for a customer"""
    expiration = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
    payload = {
        "customer_id": customer_id,
        "customer_name": customer_name,
        "exp": expiration
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[CustomerToken]:
    """Verify and decode a JWT token"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if not payload.get("customer_id"):
            logger.warning("Token without customer_id")
            return None
        return CustomerToken(
            customer_id=str(payload["customer_id"]),
            customer_name=payload.get("customer_name"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {str(e)}")
        return None
