from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError

from clinic_ops.core.security import decode_access_token, resolve_signing_secret
from clinic_ops.core.settings import settings
from clinic_ops.schemas.actor import Actor, ActorKind

BRANCH_SCOPES = {"SI", "SL", "ALL"}


def _read_token(request: Request, authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return request.cookies.get(settings.session_cookie_name)


def get_current_actor(
    request: Request, authorization: str | None = Header(default=None)
) -> Actor:
    token = _read_token(request, authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        payload = decode_access_token(
            token,
            secret=resolve_signing_secret(settings.secret_key, settings.jwt_secret),
            alg=settings.jwt_alg,
        )
        sub = payload.get("sub")
        kind = ActorKind(payload.get("kind"))
        if not sub:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    branch = str(payload.get("branch") or "").strip().upper() or None
    patient_id = payload.get("patient_id")
    if kind == ActorKind.patient:
        patient_id = str(patient_id or sub).strip().upper()
    return Actor(
        kind=kind,
        id=str(sub),
        branch=branch,
        patient_id=patient_id,
        is_admin=bool(payload.get("is_admin")),
        name=payload.get("name"),
    )


def require_actor(*kinds: str, require_branch: bool = False):
    def _inner(actor: Actor = Depends(get_current_actor)) -> Actor:
        if kinds and actor.kind.value not in kinds:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        if (
            require_branch
            and actor.kind != ActorKind.patient
            and actor.branch not in BRANCH_SCOPES
        ):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Branch required")
        return actor

    return _inner


def require_staff_admin(actor: Actor = Depends(require_actor("staff"))) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return actor


def ensure_branch_access(actor: Actor, branch: str | None) -> None:
    scope = actor.branch_scope
    if scope and branch and scope != branch:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden for this branch")
