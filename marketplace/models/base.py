from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return str(ObjectId())


class Record(BaseModel):
    """Stored record; `id` maps to Mongo `_id`."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
