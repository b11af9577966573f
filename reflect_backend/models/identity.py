"""
reflect_backend/models/identity.py

Identity claims carried by a bearer token.
"""

from pydantic import BaseModel, ConfigDict


class IdentityClaim(BaseModel):
    """
    The caller as described by their bearer token.

    `subject_id` + `issuer` is the stable key. `email` is only used to find
    the caller's billing customer, which the provider indexes by email.
    """
    model_config = ConfigDict(frozen=True)

    subject_id: str
    issuer: str
    email: str

    @property
    def provider_key(self) -> str:
        return f"{self.issuer}|{self.subject_id}"
