from pydantic import BaseModel


def _payload(data):
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [_payload(item) for item in data]
    return data


def ok(data=None):
    """Standard success envelope. Pydantic models (or lists of them) are dumped JSON-ready."""
    return {"ok": True, "data": _payload(data), "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred"):
    """Standard error envelope."""
    return {"ok": False, "data": None, "error": {"code": code, "message": message}}
