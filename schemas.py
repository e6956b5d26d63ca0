"""
Database and API schemas for Fix My Area

Each document model mirrors a MongoDB collection (``issue``, ``vote``,
``user``); the request models below them are what the routes accept.
Field names are camelCase because they are shared verbatim by the stored
documents, the sort keys and the JSON responses.
"""

import math
import re
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator

Category = Literal["infrastructure", "sanitation", "safety", "environment", "transportation", "other"]
Status = Literal["pending", "in-progress", "resolved"]
Priority = Literal["low", "medium", "high", "urgent"]
Role = Literal["user", "admin"]
SortField = Literal["createdAt", "votes", "updatedAt"]
SortOrder = Literal["asc", "desc"]
VoteAction = Literal["added", "removed"]

RESOLVED = "resolved"

MAX_IMAGES = 5
IMAGE_URL_PATTERN = re.compile(r"^https?://.+\.(jpg|jpeg|png|webp|gif)$", re.IGNORECASE)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 50

Title = Annotated[str, StringConstraints(strip_whitespace=True, min_length=5, max_length=100)]
Description = Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=1000)]
Address = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
CommentText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]
UserName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]


def _check_images(urls: List[str]) -> List[str]:
    if len(urls) > MAX_IMAGES:
        raise ValueError(f"At most {MAX_IMAGES} images are allowed")
    for url in urls:
        if not IMAGE_URL_PATTERN.match(url):
            raise ValueError(f"Invalid image URL format: {url}")
    return urls


# Embedded location (GeoJSON point, [longitude, latitude])
class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")

    @field_validator("coordinates")
    @classmethod
    def check_range(cls, v: List[float]) -> List[float]:
        lng, lat = v
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValueError(
                "Invalid coordinates. Longitude must be between -180 and 180, latitude between -90 and 90"
            )
        return v

    @property
    def lng(self) -> float:
        return self.coordinates[0]

    @property
    def lat(self) -> float:
        return self.coordinates[1]


# Embedded in issue.comments
class Comment(BaseModel):
    id: str
    text: CommentText
    author: str = Field(..., description="User id of the author")
    authorName: str
    createdAt: datetime


# Issues collection
class Issue(BaseModel):
    id: str
    title: Title
    description: Description
    category: Category
    status: Status = "pending"
    priority: Priority = "medium"
    location: GeoPoint
    address: Address
    images: List[str] = []
    reportedBy: str
    assignedTo: Optional[str] = None
    votes: int = Field(0, ge=0, description="Denormalized count of votedBy")
    votedBy: List[str] = []
    comments: List[Comment] = []
    createdAt: datetime
    updatedAt: datetime
    resolvedAt: Optional[datetime] = None

    @field_validator("images")
    @classmethod
    def check_images(cls, v: List[str]) -> List[str]:
        return _check_images(v)


# Votes collection
class Vote(BaseModel):
    id: str
    userId: str
    issueId: str
    createdAt: datetime


# Users collection
class User(BaseModel):
    id: str
    email: EmailStr
    name: UserName
    role: Role = "user"
    isVerified: bool = False
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class Identity(BaseModel):
    """Who is making the request, as resolved by the identity provider."""

    id: str
    role: Role = "user"
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# --------------- Views ----------------
class UserSummary(BaseModel):
    """Public face of a user on an issue; name and email are empty if the account is gone."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class IssueView(Issue):
    reportedBy: UserSummary
    assignedTo: Optional[UserSummary] = None


class IssueSummary(BaseModel):
    id: str
    title: str
    description: str
    status: Status
    category: Category
    location: GeoPoint
    address: str
    images: List[str] = []
    votes: int
    createdAt: datetime


class VoteView(Vote):
    issue: Optional[IssueSummary] = None


# --------------- Requests ----------------
class IssueCreate(BaseModel):
    title: Title
    description: Description
    category: Category
    priority: Priority = "medium"
    location: GeoPoint
    address: Address
    images: List[str] = []

    @field_validator("images")
    @classmethod
    def check_images(cls, v: List[str]) -> List[str]:
        return _check_images(v)


class IssueUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[Title] = None
    description: Optional[Description] = None
    category: Optional[Category] = None
    priority: Optional[Priority] = None
    address: Optional[Address] = None
    images: Optional[List[str]] = None
    status: Optional[Status] = None
    assignedTo: Optional[str] = None

    @field_validator("images")
    @classmethod
    def check_images(cls, v):
        return v if v is None else _check_images(v)

    @model_validator(mode="after")
    def no_nulls(self):
        for name in self.model_fields_set:
            if name != "assignedTo" and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class CommentCreate(BaseModel):
    text: CommentText


class SendOtpRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    isSignup: bool = False


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")
    name: Optional[UserName] = None


# --------------- Queries ----------------
def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class GeoRadius(BaseModel):
    lng: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)
    radiusKm: float = Field(..., gt=0)


class IssueFilter(BaseModel):
    """Typed filter for issue listings; every field is optional and ANDed."""

    status: Optional[Status] = None
    category: Optional[Category] = None
    priority: Optional[Priority] = None
    search: Optional[str] = None
    reportedBy: Optional[str] = None
    assignedTo: Optional[str] = None
    near: Optional[GeoRadius] = None
    sortBy: SortField = "createdAt"
    sortOrder: SortOrder = "desc"
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @field_validator("search", "reportedBy", "assignedTo", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return v or None

    @field_validator("sortBy", "sortOrder", mode="before")
    @classmethod
    def default_sort(cls, v, info):
        if v in (None, ""):
            return "createdAt" if info.field_name == "sortBy" else "desc"
        return v

    @field_validator("page", mode="before")
    @classmethod
    def clamp_page(cls, v):
        page = _as_int(v, 1)
        return page if page >= 1 else 1

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v):
        limit = _as_int(v, DEFAULT_PAGE_SIZE)
        return limit if 1 <= limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


class PageMeta(BaseModel):
    currentPage: int
    totalPages: int
    totalItems: int
    itemsPerPage: int
    hasNextPage: bool
    hasPrevPage: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PageMeta":
        total_pages = math.ceil(total / limit)
        return cls(
            currentPage=page,
            totalPages=total_pages,
            totalItems=total,
            itemsPerPage=limit,
            hasNextPage=page < total_pages,
            hasPrevPage=page > 1,
        )


class IssueViewPage(BaseModel):
    data: List[IssueView]
    meta: PageMeta


class IssuePage(BaseModel):
    data: List[Issue]
    meta: PageMeta


class VotePage(BaseModel):
    data: List[VoteView]
    meta: PageMeta


# --------------- Results ----------------
class VoteResult(BaseModel):
    issueId: str
    action: VoteAction
    votes: int
    hasVoted: bool

    def public(self) -> dict:
        return {"issueId": self.issueId, "votes": self.votes, "hasVoted": self.hasVoted}


class StatusBreakdown(BaseModel):
    totalIssues: int = 0
    pendingIssues: int = 0
    inProgressIssues: int = 0
    resolvedIssues: int = 0


class VotingStats(BaseModel):
    totalVotes: int = 0
    uniqueVoters: int = 0
    uniqueIssues: int = 0


class CategoryCount(BaseModel):
    category: str
    count: int


class PriorityCount(BaseModel):
    priority: str
    count: int


class AdminStats(StatusBreakdown):
    totalUsers: int = 0
    totalAdmins: int = 0
    newUsersThisMonth: int = 0
    totalVotes: int = 0
    uniqueVoters: int = 0
    uniqueIssues: int = 0
    recentIssues: int = 0
    recentVotes: int = 0
    resolutionRate: int = 0
    avgResolutionDays: int = 0
    issuesByCategory: List[CategoryCount] = []
    issuesByPriority: List[PriorityCount] = []


class UserStats(StatusBreakdown):
    totalVotes: int = 0
    uniqueIssuesVoted: int = 0


class StatusChangeEvent(BaseModel):
    recipientEmail: str
    recipientName: str
    issueTitle: str
    oldStatus: Status
    newStatus: Status
    issueId: str

