from typing import Optional

from fastapi.responses import JSONResponse

from models.entitlement import AccessDecision


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data if data is not None else {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data if data is not None else {},
            "error": error_code,
            "message": message,
        }
    )


def access_payload(decision: Optional[AccessDecision]) -> dict:
    if decision is None:
        return {"entitled": False, "status": "expired", "days_remaining": 0, "reason": "No entitlement record"}
    return decision.model_dump(mode="json")
