from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from mvckit.context import AppContext
from mvckit.model import ResultRow
from mvckit.query import Filter
from mvckit.sessions import Session


def get_context(request: Request) -> AppContext:
    """The AppContext built by the application lifespan."""
    return request.app.state.context


def get_session(
    request: Request,
    context: AppContext = Depends(get_context),
) -> Session:
    """Session handle for the cookie the request carries (empty when there is none)."""
    session_id: Optional[str] = request.cookies.get(context.settings.session_cookie_name)
    return context.sessions.load(session_id)


def get_current_user(
    context: AppContext = Depends(get_context),
    session: Session = Depends(get_session),
) -> ResultRow:
    """
    Dependency for protected routes.

    Runs the idle-expiry check (which also slides the expiry forward) and
    returns the credentials row with the password hash and token blanked.
    Raises 401 when the session is missing, unknown or expired.
    """
    auth = context.auth
    if auth.is_session_expired(session):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = session.get(auth.auth.session_key)
    rows = auth.auth.model.fetch([Filter(field=auth.auth.hash_code_field, operator="=", value=token)], 1)
    if not rows:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = rows[0]
    user.set(auth.auth.hash_code_field, "")
    user.set(auth.auth.password_field, "")
    return user
