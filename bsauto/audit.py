import json
import logging
from datetime import datetime, timezone

from starlette.requests import Request

audit_logger = logging.getLogger("bsauto.audit")

_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: int = logging.INFO):
    root = logging.getLogger("bsauto")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)


def get_ip(request: Request) -> str:
    """Peer address. Behind a proxy, uvicorn rewrites it from X-Forwarded-For for trusted hops only."""
    return request.client.host if request.client else "unknown"


def audit(action: str, request: Request | None = None, **details):
    """Emit one JSON audit line. The client address is added from ``request`` unless given."""
    entry = {"timestamp": datetime.now(timezone.utc).isoformat(), "action": action, **details}
    if request is not None and "ip" not in entry:
        entry["ip"] = get_ip(request)
    audit_logger.info(json.dumps(entry, default=str, ensure_ascii=False))
