from fastapi import Depends, HTTPException, status
from ..auth.dependencies import get_current_approved_user
from ..auth.models import User
from ..auth.roles import Role



def check_permission(user: User, minimum: Role) -> bool:
    """check if user holds at least the given role"""
    return user.role_enum.at_least(minimum)




def require_role(minimum: Role):
    """dependency factory requiring at least ``minimum``"""
    async def dependency(current_user: User = Depends(get_current_approved_user)) -> User:
        if not check_permission(current_user, minimum):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{minimum.value} access required"
            )
        return current_user
    return dependency
