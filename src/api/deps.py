"""
FastAPI dependencies for authentication, authorization and services.

Tokens are issued elsewhere; this module only verifies them and resolves
the ``sub`` claim to an active user.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.core.security import TokenError, decode_token
from src.database.connection import get_db
from src.database.models.user import User, UserRole
from src.services.orders.service import OrderService
from src.services.payments.service import PaymentService
from src.services.wholesalers.dispatcher import WholesalerNotificationDispatcher

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def _credentials_exception(message: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Validate JWT token and retrieve current authenticated user.

    Raises:
        HTTPException: 401 if token is invalid, expired, or user not found;
            403 if the account is inactive or locked
    """
    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise _credentials_exception()

    try:
        payload = decode_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed: Invalid token", code=e.code)
        raise _credentials_exception(str(e))

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        logger.warning("Authentication failed: Invalid user ID format")
        raise _credentials_exception()

    try:
        user = await db.get(User, user_id)
    except SQLAlchemyError as e:
        logger.error(
            "Database error during user retrieval",
            user_id=str(user_id),
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    if user is None:
        logger.warning("Authentication failed: User not found", user_id=str(user_id))
        raise _credentials_exception()

    if not user.is_active:
        logger.warning("Authentication failed: User account is inactive", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Inactive user account"},
        )

    if user.is_locked:
        logger.warning("Authentication failed: User account is locked", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Account is locked"},
        )

    return user


def require_role(*allowed_roles: UserRole):
    """
    Create a dependency that requires specific user roles.

    Example:
        @router.get("/admin", dependencies=[Depends(require_role(UserRole.ADMIN))])
    """

    async def role_checker(
        current_user: Annotated[User, Depends(get_current_user)],
    ) -> User:
        if current_user.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                user_id=str(current_user.id),
                user_role=current_user.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "FORBIDDEN", "message": "Insufficient permissions"},
            )
        return current_user

    return role_checker


async def get_current_admin(
    current_user: Annotated[User, Depends(require_role(UserRole.ADMIN, UserRole.SUPER_ADMIN))],
) -> User:
    """Dependency for endpoints requiring admin access."""
    return current_user


async def get_optional_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Optional[User]:
    """
    Retrieve current user if authenticated, otherwise return None.

    Used by guest checkout and payment endpoints.
    """
    if credentials is None:
        return None

    try:
        return await get_current_user(credentials, db)
    except HTTPException:
        logger.debug("Optional authentication failed, proceeding as anonymous")
        return None


async def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> OrderService:
    return OrderService(db)


async def get_payment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PaymentService:
    return PaymentService(db)


async def get_wholesaler_dispatcher(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> WholesalerNotificationDispatcher:
    return WholesalerNotificationDispatcher(db)


CurrentActiveUser = Annotated[User, Depends(get_current_user)]
CurrentAdmin = Annotated[User, Depends(get_current_admin)]
OptionalUser = Annotated[Optional[User], Depends(get_optional_user)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
DispatcherDep = Annotated[WholesalerNotificationDispatcher, Depends(get_wholesaler_dispatcher)]
