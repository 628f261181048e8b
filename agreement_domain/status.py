from enum import Enum


class AgreementStatus(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    WITHDRAWN = "withdrawn"
