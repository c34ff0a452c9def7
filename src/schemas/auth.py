from pydantic import BaseModel, field_validator


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from a Supabase access token."""

    id: str
    email: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v):
        """Supabase user ids are UUIDs; accept any non-empty value as a string"""
        if v is None or not str(v).strip():
            raise ValueError("User ID cannot be empty")
        return str(v)
