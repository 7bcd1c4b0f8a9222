from __future__ import annotations

from typing import Any, Dict

from fastapi.responses import JSONResponse

from policygate.core.rbac import Decision, DenyReason


_DENY_RESPONSES: Dict[DenyReason, tuple[int, str, str]] = {
    DenyReason.CAPABILITY: (403, "CAPABILITY_DISABLED", "Capability disabled"),
    DenyReason.UNAUTHENTICATED: (401, "UNAUTHENTICATED", "Authentication required"),
    DenyReason.ROLE_MISMATCH: (403, "FORBIDDEN", "Forbidden"),
    DenyReason.POLICY: (403, "FORBIDDEN", "Forbidden"),
}


def error_response(code: str, message: str, status_code: int, corr_id: str, details: dict | None = None):
    body: Dict[str, Any] = {"error": {"code": code, "message": message, "corr_id": corr_id}}
    if details:
        body["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def deny_response(decision: Decision, corr_id: str) -> JSONResponse:
    reason = decision.reason or DenyReason.POLICY
    status_code, code, message = _DENY_RESPONSES[reason]
    details: Dict[str, Any] = {"reason": reason.value}
    if reason is DenyReason.CAPABILITY and decision.meta.get("capability"):
        details["capability"] = decision.meta["capability"]
    return error_response(code, message, status_code, corr_id, details)
