from fastapi import Depends, HTTPException

from app.utils.token import Principal, get_current_principal


def require_admin(principal: Principal = Depends(get_current_principal)):
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def require_roles(*roles: str):
    def dependency(principal: Principal = Depends(get_current_principal)):
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail=f"Requires one of roles: {', '.join(roles)}")
        return principal

    return dependency
