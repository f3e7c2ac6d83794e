from typing import Optional

from fastapi import Depends, Header, HTTPException

from schemas import User
from services import get_accounts


def bearer_token(authorization: str = Header(default="")) -> Optional[str]:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user(token: Optional[str] = Depends(bearer_token), accounts=Depends(get_accounts)) -> Optional[User]:
    """The caller's identity, or None for an anonymous request.

    In local mode every request is the single local profile.
    """
    return accounts.get_user(token)


def require_user(user: Optional[User] = Depends(current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user
