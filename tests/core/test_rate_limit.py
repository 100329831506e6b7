from starlette.requests import Request

from app.core.rate_limit import credential_key


def _request(headers=None, client=("203.0.113.9", 5000)):
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    })


def test_bearer_token_is_the_bucket():
    assert credential_key(_request({"Authorization": "Bearer abc"})) == "Bearer abc"


def test_api_key_is_the_bucket():
    assert credential_key(_request({"X-API-Key": "sk_123"})) == "sk_123"


def test_anonymous_requests_fall_back_to_address():
    assert credential_key(_request()) == "203.0.113.9"
