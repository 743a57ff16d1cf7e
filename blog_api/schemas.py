import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blog_api.models import TAG_CATEGORIES

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_NAME_RE = re.compile(r"^[^\W\d_]+(?: [^\W\d_]+)*$")
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
_HEX_COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
_TAG_NAME_RE = re.compile(r"^[a-zA-Z0-9\s_-]+$")

Tone = Literal[
    "professional",
    "casual",
    "technical",
    "friendly",
    "formal",
    "teknik",
    "günlük",
    "başlangıç",
    "profesyonel",
    "eğlenceli",
]
TagCategory = Literal[TAG_CATEGORIES]  # type: ignore[valid-type]


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("Please provide a valid email address")
    return value


def _check_name(value: str) -> str:
    value = value.strip()
    if not _NAME_RE.match(value):
        raise ValueError("Name can only contain letters and spaces")
    return value


def _check_password(value: str) -> str:
    if not _PASSWORD_RE.match(value):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, and one number"
        )
    return value


def _check_tags(value: list[str]) -> list[str]:
    for tag in value:
        if not 1 <= len(tag.strip()) <= 30:
            raise ValueError("Each tag must be between 1 and 30 characters")
    return value


def _check_comment(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Comment cannot be empty")
    return value


def _check_color(value):
    if value is not None and not _HEX_COLOR_RE.match(value):
        raise ValueError("Color must be a hex value such as #3B82F6")
    return value


# --- Auth / User ---

class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: str = Field(max_length=255)
    password: str = Field(min_length=6, max_length=128)
    profile_image_url: str | None = Field(None, max_length=500)
    bio: str = Field("", max_length=500)
    admin_access_token: str | None = None

    validate_name = field_validator("name")(_check_name)
    validate_email = field_validator("email")(_check_email)
    validate_password = field_validator("password")(_check_password)


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=1)

    validate_email = field_validator("email")(_check_email)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(max_length=255)

    validate_email = field_validator("email")(_check_email)


class ResetPasswordRequest(BaseModel):
    password: str = Field(min_length=6, max_length=128)

    validate_password = field_validator("password")(_check_password)


class ProfileUpdate(BaseModel):
    name: str | None = Field(None, min_length=2, max_length=50)
    bio: str | None = Field(None, max_length=500)
    profile_image_url: str | None = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value):
        return None if value is None else _check_name(value)


class UserAdminUpdate(ProfileUpdate):
    email: str | None = Field(None, max_length=255)
    role: Literal["Admin", "Member"] | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value):
        return None if value is None else _check_email(value)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    profile_image_url: str | None = None
    bio: str = ""
    role: str
    created_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class AuthResponse(UserResponse):
    token: str


# --- Post ---

class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1, max_length=50000)
    cover_image_url: str | None = Field(None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    is_draft: bool = False
    generated_by_ai: bool = False

    validate_tags = field_validator("tags")(_check_tags)


class PostUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    content: str | None = Field(None, min_length=1, max_length=50000)
    cover_image_url: str | None = Field(None, max_length=500)
    tags: list[str] | None = None
    is_draft: bool | None = None
    needs_review: bool | None = None

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value):
        if value is None:
            return value
        return _check_tags(value)


class SlugRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class SlugValidateRequest(BaseModel):
    slug: str = Field(min_length=1, max_length=350)
    exclude_post_id: int | None = None


# --- Comment ---

class CommentCreate(BaseModel):
    content: str = Field(min_length=1, max_length=1000)
    parent_comment_id: int | None = None

    validate_content = field_validator("content")(_check_comment)


class CommentUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=1000)

    validate_content = field_validator("content")(_check_comment)


# --- Tag ---

class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    display_name: str | None = Field(None, max_length=50)
    description: str | None = Field(None, max_length=200)
    color: str | None = None
    category: TagCategory = "Other"
    is_official: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _TAG_NAME_RE.match(value):
            raise ValueError("Tag name may only contain letters, numbers, spaces, - and _")
        return value

    validate_color = field_validator("color")(_check_color)


class TagUpdate(BaseModel):
    display_name: str | None = Field(None, max_length=50)
    description: str | None = Field(None, max_length=200)
    color: str | None = None
    category: TagCategory | None = None
    is_official: bool | None = None
    is_active: bool | None = None

    validate_color = field_validator("color")(_check_color)


class TagMergeRequest(BaseModel):
    source_tags: list[str] = Field(min_length=1)
    target_tag: str = Field(min_length=1, max_length=50)


# --- AI ---

class GeneratePostRequest(BaseModel):
    title: str = Field(min_length=5, max_length=200)
    tone: Tone = "professional"


class GenerateIdeasRequest(BaseModel):
    topics: str = Field(min_length=3, max_length=500)


class GenerateReplyRequest(BaseModel):
    content: str = Field(min_length=10, max_length=10000)
    author: str | None = Field(None, min_length=1, max_length=100)


class GenerateSummaryRequest(BaseModel):
    content: str = Field(min_length=10, max_length=10000)


class PostIdea(BaseModel):
    title: str
    description: str
    tags: list[str]
    tone: str


class PostSummary(BaseModel):
    title: str
    summary: str

