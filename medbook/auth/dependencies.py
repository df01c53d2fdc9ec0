from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from medbook.auth import jwt_handler
from medbook.core.actor import ACTOR_ROLES, Actor

security = HTTPBearer()


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not str(subject).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token subject")
    if role not in ACTOR_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token role")

    return Actor(user_id=int(subject), role=role)


def require_roles(*roles: str):
    def _require(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail=f"Requires one of the roles: {', '.join(roles)}")
        return actor

    return _require
