"""HMAC-SHA512 request signing for the card processor API.

The processor signs and verifies every document with the same recipe:

1. Drop every ``signature`` field, at any depth.
2. Flatten the tree into ``path:value`` strings. Object keys are visited in
   sorted order and joined with ``:``; arrays contribute their indices.
   Booleans render as ``1``/``0``, empty strings as ``path:``. ``None`` values
   and empty arrays are left out, while ``0`` is kept.
3. Sort the flat list again (flattening emits in tree order). All sorting
   compares UTF-16 code units, as the processor does.
4. Join with ``;``.
5. HMAC-SHA512 with the project secret, Base64 encoded.

Any deviation, however small, makes the processor reject the request.
"""

import base64
import copy
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Union

from pydantic import SecretStr

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"


def utf16_key(text: str) -> bytes:
    """Sort key ordering strings by UTF-16 code units rather than code points."""
    # big-endian code units compare bytewise in code unit order
    return text.encode("utf-16-be", errors="surrogatepass")


def strip_signatures(payload: Any) -> Any:
    """Return a deep copy of ``payload`` without any ``signature`` keys."""
    data = copy.deepcopy(payload)
    _strip_in_place(data)
    return data


def _strip_in_place(node: Any) -> None:
    if isinstance(node, dict):
        node.pop(SIGNATURE_FIELD, None)
        for value in node.values():
            _strip_in_place(value)
    elif isinstance(node, list):
        for item in node:
            _strip_in_place(item)


def _render_scalar(value: Any) -> str:
    # bool is a subclass of int, so it has to be checked first
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def flatten_params(node: Any, prefix: str = "") -> List[str]:
    """Flatten a payload tree into ``path:value`` strings in tree order."""
    result: List[str] = []

    if isinstance(node, dict):
        items = [(str(key), node[key]) for key in sorted(node, key=lambda k: utf16_key(str(k)))]
    else:
        items = [(str(index), item) for index, item in enumerate(node)]

    for key, value in items:
        path = f"{prefix}:{key}" if prefix else key

        if value is None:
            continue
        if isinstance(value, (dict, list)):
            # empty arrays and objects contribute nothing
            result.extend(flatten_params(value, path))
        elif value == "":
            result.append(f"{path}:")
        else:
            result.append(f"{path}:{_render_scalar(value)}")

    return result


def canonicalize(payload: Dict[str, Any]) -> str:
    """Build the canonical string the signature is computed over."""
    params = flatten_params(strip_signatures(payload))
    params.sort(key=utf16_key)
    return ";".join(params)


class SignatureEngine:
    """Signs and verifies processor documents with the shared project secret.

    The engine holds no mutable state, so a single instance can be shared by
    every payment attempt in the process.
    """

    def __init__(self, secret_key: Union[str, SecretStr]):
        if isinstance(secret_key, SecretStr):
            secret_key = secret_key.get_secret_value()
        if not secret_key:
            raise ValueError("Signature secret key must not be empty")
        self._key = secret_key.encode("utf-8")

    def sign(self, payload: Dict[str, Any]) -> str:
        """Return the Base64 HMAC-SHA512 signature of ``payload``."""
        digest = hmac.new(
            self._key,
            canonicalize(payload).encode("utf-8"),
            hashlib.sha512,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, payload: Dict[str, Any], signature: str) -> bool:
        """Check ``signature`` against the one recomputed over ``payload``.

        Any ``signature`` fields inside ``payload`` are ignored, so the
        document can be passed exactly as it was received.
        """
        if not signature or not isinstance(signature, str):
            return False
        expected = self.sign(payload)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    def attach(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Sign a request body and store the result as ``general.signature``."""
        signature = self.sign(payload)
        payload.setdefault("general", {})[SIGNATURE_FIELD] = signature
        return payload
