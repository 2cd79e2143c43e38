from pydantic import BaseModel, EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    capabilities: list[str] = []


class AuthResponse(BaseModel):
    token: str
    user: UserResponse
