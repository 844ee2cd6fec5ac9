"""
Document variants — one pydantic model per known collection, opaque JSON for the rest.

Writes are validated strictly against their collection's model; reads are
parsed leniently so an unexpected backend document never breaks a subscriber.

Depends on: errors
"""

import sys
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from vibeagent.errors import ValidationError


class Document(BaseModel):
    """Fields common to every stored document. Unknown fields are preserved."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    id: Optional[str] = Field(default=None, alias="_id", description="Backend document id")
    rev: Optional[str] = Field(default=None, alias="_rev", description="Backend revision")
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class Note(Document):
    text: str = Field(..., description="Note body", max_length=65536)


class Author(BaseModel):
    model_config = ConfigDict(extra="allow")
    did: Optional[str] = None
    ref: Optional[str] = None


class Post(Document):
    content: str = Field(..., min_length=1, max_length=65536)
    author: Optional[Union[Author, str]] = None


class Contact(Document):
    model_config = ConfigDict(extra="allow", populate_by_name=True, str_strip_whitespace=True)
    name: str = Field(..., min_length=1, max_length=256)
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=64)


class OpaqueDocument(BaseModel):
    """Fallback for collections without a registered model. Any JSON object fits."""
    model_config = ConfigDict(extra="allow")


DOCUMENT_TYPES: dict[str, type[Document]] = {
    "notes": Note,
    "posts": Post,
    "contacts": Contact,
}


def document_type(collection: str) -> type[BaseModel]:
    return DOCUMENT_TYPES.get(collection, OpaqueDocument)


def _dump(doc: BaseModel) -> dict:
    # Only fields the caller sent; explicit nulls survive
    return doc.model_dump(by_alias=True, exclude_unset=True)


def validate_document(collection: str, data: Any) -> dict:
    """Validate one outgoing document. Raises ValidationError with the pydantic detail."""
    if not isinstance(data, dict):
        raise ValidationError(f"Document for '{collection}' must be an object, got {type(data).__name__}")
    try:
        return _dump(document_type(collection).model_validate(data))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid '{collection}' document: {e.errors(include_url=False)}") from None


def validate_write_payload(collection: str, data: Any) -> Union[dict, list[dict]]:
    """A write carries one document or a list of them."""
    if isinstance(data, list):
        if not data:
            raise ValidationError("Write payload must not be an empty list")
        return [validate_document(collection, item) for item in data]
    return validate_document(collection, data)


def parse_documents(collection: str, docs: list) -> list[dict]:
    """Parse documents from the backend, keeping ones that do not fit their model as opaque."""
    model = document_type(collection)
    parsed = []
    for raw in docs:
        if not isinstance(raw, dict):
            print(f"[VibeAgent] Skipping non-object document in '{collection}'", file=sys.stderr)
            continue
        try:
            parsed.append(_dump(model.model_validate(raw)))
        except PydanticValidationError:
            parsed.append(_dump(OpaqueDocument.model_validate(raw)))
    return parsed
