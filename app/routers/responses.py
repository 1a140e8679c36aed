# OpenAPI error examples shared by the routers

def error_response(description: str, detail: str, code: str | None = None) -> dict:
    example = {"detail": detail}
    if code:
        example["code"] = code
    return {
        "description": description,
        "content": {
            "application/json": {
                "example": example
            },
        },
    }


UNAUTHORIZED = {401: error_response("Unauthorized.", "Not authenticated.", "UNAUTHENTICATED")}
FORBIDDEN = {403: error_response("Forbidden.", "Admin access required.", "FORBIDDEN")}
SERVER_ERROR = {500: error_response("Internal Server Error.", "Internal Server Error.")}
