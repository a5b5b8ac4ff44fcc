"""
Standardized JSON error payloads shared by every blueprint
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any

from flask import jsonify, g, has_request_context


@dataclass
class ApiError:
    """Error body: {"error": ..., "error_code": ..., "request_id": ...}"""
    error: str
    error_code: str
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.error, "error_code": self.error_code}
        if self.request_id:
            result["request_id"] = self.request_id
        return result


def error_response(error: str, error_code: str, status: int):
    request_id = getattr(g, 'request_id', None) if has_request_context() else None
    return jsonify(ApiError(error, error_code, request_id).to_dict()), status
