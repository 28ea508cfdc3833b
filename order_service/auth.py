from typing import Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import get_db
from .errors import AuthenticationError
from .models import Merchant


def get_current_merchant(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Merchant:
    """Resolve the merchant from ``Authorization: Bearer <api key>``.

    A missing or unknown key is always rejected; there is no default tenant.
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing merchant API key", reason="missing_credentials")

    merchant = db.execute(select(Merchant).where(Merchant.api_key == token.strip())).scalar_one_or_none()
    if merchant is None:
        raise AuthenticationError("Invalid merchant API key", reason="invalid_credentials")
    return merchant
