"""mmd utilities."""

from mmd.utils.format import error_payload, serialize_result

__all__ = ["error_payload", "serialize_result"]
