"""Schemas for publishing and republishing replaceable records."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from nostr_stage.schemas.event import SignedEvent

ResourceType = Literal["document", "video"]


class AdditionalLink(BaseModel):
    """Supplementary link rendered as an ``r`` tag."""

    url: str
    title: str | None = None

    model_config = ConfigDict(frozen=True)


class ResourceFields(BaseModel):
    """Declared fields of a resource (document or video)."""

    title: str = Field(..., min_length=1)
    summary: str = ""
    content: str = ""
    image: str | None = None
    price: int = Field(0, ge=0, description="Price in sats; 0 means free")
    topics: list[str] = Field(default_factory=list)
    additional_links: list[AdditionalLink] = Field(default_factory=list)
    type: ResourceType = "document"
    video_url: str | None = None


class ResourceDraft(ResourceFields):
    """A resource ready for first publication."""

    id: str = Field(..., min_length=1, max_length=64, description="Stable identifier (d tag)")


class CourseFields(BaseModel):
    """Declared fields of a course."""

    title: str = Field(..., min_length=1)
    summary: str = ""
    image: str | None = None
    price: int = Field(0, ge=0)
    topics: list[str] = Field(default_factory=list)


class CourseDraft(CourseFields):
    """A course ready for first publication."""

    id: str = Field(..., min_length=1, max_length=64)


class PublishOptions(BaseModel):
    """Relay selection and optional client-side signature."""

    relays: list[str] = Field(default_factory=list, description="Explicit relay URLs")
    relay_set: Literal["default", "content", "profile"] = "default"
    signed_event: SignedEvent | None = Field(
        None,
        description="Event signed client-side; omit to request platform signing",
    )


class PublishResourceRequest(PublishOptions):
    draft: ResourceDraft


class PublishCourseRequest(PublishOptions):
    draft: CourseDraft
    lesson_resource_ids: list[str] = Field(..., min_length=1)


class RepublishResourceRequest(PublishOptions):
    fields: ResourceFields


class RepublishCourseRequest(PublishOptions):
    fields: CourseFields


class PublishResponse(BaseModel):
    """Outcome of a publish or republish."""

    event: SignedEvent
    note_id: str
    published_relays: list[str]
    failed_relays: list[str] = Field(default_factory=list)
    mode: Literal["server-sign", "signed-event"]
