"""Pydantic schemas for API requests and responses."""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime

from secureshare.audit import LogRow
from secureshare.models import Role, UserStatus, Visibility

# Authentication schemas
class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1)

class UserInfo(BaseModel):
    id: int
    username: str
    email: str
    role: Role
    status: UserStatus
    created_at: datetime
    last_login: Optional[datetime] = None

    model_config = {"from_attributes": True}

class LoginResponse(BaseModel):
    success: bool
    message: str
    session_id: str
    user: UserInfo
    password_change_required: bool = False

class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

# File schemas
class FileInfo(BaseModel):
    id: int
    name: str
    mime_type: str
    size: int
    owner_id: Optional[int] = None
    visibility: Visibility
    uploaded_at: datetime

    model_config = {"from_attributes": True}

class FileUploadResponse(BaseModel):
    success: bool
    message: str
    file: FileInfo

class FileListResponse(BaseModel):
    files: List[FileInfo]
    total: int

class VisibilityRequest(BaseModel):
    visibility: Visibility

class StorageStats(BaseModel):
    total_size: int
    file_count: int
    total_size_mb: float

# User administration schemas
class UserCreateRequest(BaseModel):
    username: str
    email: str
    password: str
    role: Role = Role.USER

class UserUpdateRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None

class RoleRequest(BaseModel):
    role: Role

class StatusRequest(BaseModel):
    status: UserStatus

class PasswordResetRequest(BaseModel):
    new_password: str

class UserListResponse(BaseModel):
    users: List[UserInfo]
    total: int

# Audit and settings schemas
class LogListResponse(BaseModel):
    logs: List[LogRow]
    total: int
    page: int
    page_size: int

class SettingsResponse(BaseModel):
    settings: Dict[str, str]

# Generic response schemas
class SuccessResponse(BaseModel):
    success: bool
    message: str
