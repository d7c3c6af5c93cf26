from datetime import datetime
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class TokenPair(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


# size and shape of the secret are judged by the rotation engine, not here
class RefreshRequest(CamelModel):
    refresh_token: str


class LogoutRequest(CamelModel):
    refresh_token: str = ""


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=150)
    password: str = Field(min_length=5, max_length=128)


class SessionOut(CamelModel):
    user_id: int
    family_id: str
    issued_at: datetime
    expires_at: datetime
