# /leadflow/models/conversation.py

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from leadflow.models.flow import END

# save_to_field values as configured on nodes -> record attribute
FIELD_ALIASES = {
    "name": "name",
    "email": "email",
    "budget": "budget",
    "bedrooms": "bedrooms",
    "projectname": "project_name",
    "project_name": "project_name",
    "pageurl": "page_url",
    "page_url": "page_url",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRecord(BaseModel):
    """
    Per-(customer, business number) session state.

    Only the most recent non-closed record for a key pair is current; older or
    closed records stay in the collection as history.
    """
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: Optional[str] = Field(default=None, alias="_id")
    customer_phone: str
    business_number_id: str
    flow_id: Optional[str] = None
    status: str = Field(default="pending", description="pending / contacted / closed")

    conversation_state: str = Field(..., description="Current node id, or END")

    # Captured fields
    name: Optional[str] = None
    email: Optional[str] = None
    budget: Optional[str] = None
    bedrooms: Optional[str] = None
    project_name: Optional[str] = None
    page_url: Optional[str] = None
    extra_fields: Dict[str, str] = Field(default_factory=dict)

    skip_name: bool = False
    skip_email: bool = False

    # Terminal bookkeeping
    ended_at: Optional[datetime] = None
    end_message_sent: bool = False

    # Stall follow-up lifecycle
    follow_up_sent: bool = False
    follow_up_sent_at: Optional[datetime] = None
    agent_contacted: Optional[bool] = None
    needs_immediate_attention: bool = False

    # Per-node nudges and post-completion follow-up
    last_node_sent_at: Optional[datetime] = None
    node_follow_up_sent: bool = False
    completion_follow_up_sent: bool = False

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_ended(self) -> bool:
        return self.conversation_state == END

    def get_field(self, field: str) -> Optional[str]:
        attr = FIELD_ALIASES.get(field.lower())
        if attr:
            return getattr(self, attr)
        return self.extra_fields.get(field)

    def set_field(self, field: str, value: Optional[str]) -> None:
        attr = FIELD_ALIASES.get(field.lower())
        if attr:
            setattr(self, attr, value)
        else:
            self.extra_fields = {**self.extra_fields, field: value or ""}

    def template_values(self) -> Dict[str, Any]:
        """Values exposed to message templates, keyed by lower-cased placeholder name."""
        return {
            "name": self.name,
            "email": self.email,
            "budget": self.budget,
            "bedrooms": self.bedrooms,
            "projectname": self.project_name,
            **{k.lower(): v for k, v in self.extra_fields.items()},
        }

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})
