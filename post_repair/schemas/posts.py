from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

AMP_SUFFIX = "/amp"


class Post(BaseModel):
    id: str
    title: str = ""
    key: str = ""
    full_url: str
    created_by: str | None = None
    created_at: datetime
    author_id: str | None = None


class BrokenRecord(BaseModel):
    """Backlog row mapping a legacy post to the identities it should carry."""

    model_config = ConfigDict(frozen=True)

    old_id: str
    author_id: str
    author_key: str = ""
    created_by: str
    creator_key: str = ""


class Author(BaseModel):
    model_config = ConfigDict(frozen=True)

    uuid: str
    email: str = ""
    name: str = ""
    key: str
    avatar: str = ""
    is_brand: bool = False


class UnfixedItem(BaseModel):
    item_id: str
    reason: str
    error: str

    def describe(self) -> str:
        return f"Error fixing post with ID {self.item_id}, caused by: {self.reason}. Error: {self.error}"


class UrlMirrorPatch(BaseModel):
    article_url: str
    article_url_amp: str

    @classmethod
    def for_url(cls, url: str, **extra: object) -> "UrlMirrorPatch":
        return cls(article_url=url, article_url_amp=url + AMP_SUFFIX, **extra)


class CrossReferenceMirrorPatch(UrlMirrorPatch):
    authors: list[Author] = Field(default_factory=list)
