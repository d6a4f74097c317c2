from typing import Optional

from fastapi import Header, HTTPException, Request

from donation_service.services.audit import RequestMeta


def require_admin(x_user_role: Optional[str] = Header(None)):
    """Require admin role (header set by the upstream API gateway)"""
    if x_user_role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")


def request_meta(request: Request) -> RequestMeta:
    """Caller IP and user agent for the audit trail"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    return RequestMeta(ip_address=ip_address, user_agent=request.headers.get("user-agent"))
