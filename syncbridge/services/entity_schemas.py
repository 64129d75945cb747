"""Field dictionaries for every replicated entity type.

Each rule pairs the System A column with its System B counterpart. Enumerated
values are stored lower-case in System A and Title-case in System B.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any

from syncbridge.core.exceptions import SchemaValidationError
from syncbridge.schemas.sync_event import Provenance


class EntityType(str, PyEnum):
    USERS = "users"
    POSTS = "posts"
    LIKES = "likes"


@dataclass(frozen=True)
class CaseEnum:
    """Closed set of values whose letter case differs between the two systems."""

    members: tuple[str, ...]

    def render(self, value: Any, system: Provenance) -> Any:
        if value is None:
            return None
        if not isinstance(value, str) or value.strip().lower() not in self.members:
            raise SchemaValidationError(f"Value {value!r} is not one of {', '.join(self.members)}")
        canonical = value.strip().lower()
        return canonical if system is Provenance.A else canonical.capitalize()


@dataclass(frozen=True)
class FieldRule:
    a: str
    b: str
    normalizer: CaseEnum | None = None
    references: EntityType | None = None

    def name_in(self, system: Provenance) -> str:
        return self.a if system is Provenance.A else self.b


@dataclass(frozen=True)
class EntitySchema:
    entity_type: EntityType
    fields: tuple[FieldRule, ...]


USER_STATUS = CaseEnum(("active", "inactive", "suspended"))
POST_STATUS = CaseEnum(("draft", "published", "archived"))
REACTION_TYPE = CaseEnum(("like", "love", "wow", "sad", "angry"))

ENTITY_SCHEMAS: dict[EntityType, EntitySchema] = {
    EntityType.USERS: EntitySchema(
        EntityType.USERS,
        (
            FieldRule("username", "user_name"),
            FieldRule("email", "email_address"),
            FieldRule("full_name", "display_name"),
            FieldRule("phone_number", "mobile"),
            FieldRule("status", "account_status", normalizer=USER_STATUS),
        ),
    ),
    EntityType.POSTS: EntitySchema(
        EntityType.POSTS,
        (
            FieldRule("user_id", "author_id", references=EntityType.USERS),
            FieldRule("post_title", "title"),
            FieldRule("post_content", "content"),
            FieldRule("post_status", "status", normalizer=POST_STATUS),
            FieldRule("view_count", "views"),
        ),
    ),
    EntityType.LIKES: EntitySchema(
        EntityType.LIKES,
        (
            FieldRule("user_id", "user_id", references=EntityType.USERS),
            FieldRule("post_id", "post_id", references=EntityType.POSTS),
            FieldRule("like_type", "reaction_type", normalizer=REACTION_TYPE),
        ),
    ),
}
