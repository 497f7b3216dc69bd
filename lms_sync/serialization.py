# =============================================================================
# LMS Sync Client -- JSON Serialization
# =============================================================================
#
# orjson when installed, stdlib json otherwise. Used for the persisted queue
# snapshot and for broadcast channel frames.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

try:
    import orjson

    def dumps(obj: Any) -> bytes:
        return orjson.dumps(obj)

    def loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    DecodeError: type[ValueError] = orjson.JSONDecodeError

except ImportError:

    def dumps(obj: Any) -> bytes:
        return json.dumps(obj, separators=(",", ":")).encode()

    def loads(data: str | bytes) -> Any:
        return json.loads(data)

    DecodeError = json.JSONDecodeError
