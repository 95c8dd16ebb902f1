from fastapi import APIRouter, Depends, HTTPException, Request, status, Response

from mvckit.context import AppContext
from mvckit.dependencies import get_context, get_current_user, get_session
from mvckit.errors import QueryExecutionError
from mvckit.helpers import get_client_ip
from mvckit.model import ResultRow
from mvckit.query import Filter, SQLField
from mvckit.schemas import SignupRequest, LoginRequest, UserResponse, MessageResponse
from mvckit.sessions import Session

router = APIRouter(prefix="/auth", tags=["auth"])


def _user_response(row: ResultRow) -> UserResponse:
    return UserResponse(
        id=row.value("id"),
        username=row.value("username"),
        expires_at=row.value("expires_at"),
        created_at=row.value("created_at"),
    )


@router.post("/signup", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def signup(
    request: SignupRequest,
    context: AppContext = Depends(get_context),
):
    """
    Create new user account.

    Process:
    1. Validate input (done by Pydantic)
    2. Hash password
    3. Insert the credentials row

    Error cases:
    - 422: Validation failed (caught by FastAPI)
    - 409: Username already exists
    """
    users = context.users
    auth = context.auth.auth

    existing = users.fetch([Filter(field=auth.username_field, operator="=", value=request.username)], 1)
    if existing:
        # acceptable leak at signup; login stays enumeration-safe
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already registered"
        )

    try:
        users.insert([
            SQLField(auth.username_field, request.username),
            SQLField(auth.password_field, context.auth.hash_password(request.password)),
        ])
    except QueryExecutionError:
        # lost a race with a concurrent signup on the unique index
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already registered"
        )

    return MessageResponse(message="Account created")


@router.post("/login", response_model=UserResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    context: AppContext = Depends(get_context),
    session: Session = Depends(get_session),
):
    """
    Authenticate user and create session.

    Security notes:
    - One generic error for every failure (blocked IP, blocked username,
      missing field, unknown user, wrong password)
    - Password hash is checked even for unknown usernames
    - Failed attempts count against both the client IP and the username
    """
    result = context.auth.login(session, payload.username, payload.password, get_client_ip(request))
    _set_session_cookie(response, session, context)

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=context.settings.login_fail_message,
            headers=_cookie_headers(response),
        )

    return _user_response(result.user)


@router.post("/logout", response_model=MessageResponse)
def logout(
    response: Response,
    context: AppContext = Depends(get_context),
    session: Session = Depends(get_session),
):
    """
    Invalidate session and clear cookie.

    The login row's expiry is forced into the past, then the token is
    dropped from the session. Returns success even without a session
    (idempotent).
    """
    context.auth.kill_session(session)
    session.pop(context.settings.auth_session_key)
    session.destroy()

    _clear_session_cookie(response, context)

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(user: ResultRow = Depends(get_current_user)):
    """
    Get authenticated user's information.

    Protected route example; every call slides the idle expiry forward.
    """
    return _user_response(user)


def _cookie_headers(response: Response) -> dict:
    cookie = response.headers.get("set-cookie")
    return {"set-cookie": cookie} if cookie else {}


def _set_session_cookie(response: Response, session: Session, context: AppContext):
    """
    Set session cookie with security flags.

    The cookie only contains the session id (opaque token).
    All session data stays server-side.
    """
    if not session.modified or not session.id:
        return
    settings = context.settings
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session.id,
        httponly=settings.cookie_httponly,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.session_lifetime_hours * 3600,
        path="/",
        domain=settings.cookie_domain if settings.cookie_domain != "localhost" else None
    )


def _clear_session_cookie(response: Response, context: AppContext):
    """
    Clear session cookie by setting it with max_age=0.
    """
    settings = context.settings
    response.set_cookie(
        key=settings.session_cookie_name,
        value="",
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=0,
        path="/",
        domain=settings.cookie_domain if settings.cookie_domain != "localhost" else None
    )
