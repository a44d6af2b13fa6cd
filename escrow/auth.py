from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from escrow import settings


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def is_operator(claims: dict) -> bool:
    return claims.get("role") == settings.OPERATOR_ROLE


def require_operator(claims: dict = Depends(verify_token)) -> dict:
    if not is_operator(claims):
        raise HTTPException(status_code=403, detail="Platform operator role required")
    return claims


def ensure_organization_access(claims: dict, organization_id: str):
    """Organizations may only touch their own records; operators may touch any."""
    if is_operator(claims):
        return
    if claims.get("organization_id") != organization_id:
        raise HTTPException(status_code=403, detail="Not allowed for this organization")


def ensure_customer_access(claims: dict, customer_id: str):
    """Only the paying customer (or an operator) may act for the customer."""
    if is_operator(claims):
        return
    if claims.get("sub") != customer_id:
        raise HTTPException(status_code=403, detail="Only the customer may do this")


def ensure_order_access(claims: dict, order):
    """The order's customer, its organization and operators may see and cancel it."""
    if is_operator(claims) or claims.get("sub") == order.customer_id:
        return
    if claims.get("organization_id") and claims.get("organization_id") == order.organization_id:
        return
    raise HTTPException(status_code=403, detail="Not allowed for this order")


def listing_scope(claims: dict) -> dict:
    """Filters forced onto list endpoints: organizations see their own, customers theirs."""
    if is_operator(claims):
        return {}
    if claims.get("organization_id"):
        return {"organization_id": claims["organization_id"]}
    return {"customer_id": claims.get("sub")}
