"""Pure agreement domain logic: payload normalisation, statuses and formatting."""

from .normalizer import (PayloadShape, detect_payload_shapes,
                         normalize_agreement_payload)
from .status import AgreementStatus

__all__ = [
    "AgreementStatus",
    "PayloadShape",
    "detect_payload_shapes",
    "normalize_agreement_payload",
]
