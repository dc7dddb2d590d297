# /leadflow/models/flow.py

from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

# Reserved ids shared by the flow graph, the engine and the follow-up scheduler
END = "END"
FOLLOWUP_YES = "followup_yes"
FOLLOWUP_NO = "followup_no"

CAPTURABLE_FIELDS = ("name", "email", "budget", "bedrooms", "projectName")


class Button(BaseModel):
    """A reply button. Its reply id is the target node id, or the fallback id."""
    model_config = ConfigDict(frozen=True)

    title: str
    next_node_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def reply_id(self) -> Optional[str]:
        return self.next_node_id or self.id


class ListRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: Optional[str] = None
    next_node_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def reply_id(self) -> Optional[str]:
        return self.next_node_id or self.id


class ListSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = ""
    rows: List[ListRow] = Field(default_factory=list)


class BaseNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    message_text: str = ""
    save_to_field: Optional[str] = Field(default=None, description="Record field the reply is written to")
    next_node_id: Optional[str] = Field(default=None, description="Linear continuation or END")

    # Per-node nudge when the customer goes quiet on this node
    follow_up_enabled: bool = False
    follow_up_delay_minutes: Optional[int] = None
    follow_up_message: Optional[str] = None

    def reply_ids(self) -> List[str]:
        """Ids the customer can send back by tapping an option on this node."""
        return []

    def outgoing_ids(self) -> List[str]:
        ids = [self.next_node_id] if self.next_node_id else []
        return ids + self.reply_ids()


class TextNode(BaseNode):
    message_type: Literal["text"] = "text"


class ButtonsNode(BaseNode):
    message_type: Literal["buttons"] = "buttons"
    buttons: List[Button] = Field(default_factory=list)

    def reply_ids(self) -> List[str]:
        return [b.reply_id for b in self.buttons if b.reply_id]


class ListNode(BaseNode):
    message_type: Literal["list"] = "list"
    list_button_text: Optional[str] = None
    list_sections: List[ListSection] = Field(default_factory=list)

    def reply_ids(self) -> List[str]:
        return [r.reply_id for s in self.list_sections for r in s.rows if r.reply_id]


Node = Annotated[Union[TextNode, ButtonsNode, ListNode], Field(discriminator="message_type")]


class FlowGraph(BaseModel):
    """
    Immutable, load-time validated conversation graph for one business number.
    Nodes are indexed by node_id; `END` is a sentinel target, and a node whose
    node_id is literally "END" (if present) is the closing message.
    """
    model_config = ConfigDict(frozen=True)

    flow_id: str
    name: str = ""
    start_node_id: str
    nodes: Dict[str, Node]

    completion_follow_up_yes_node_id: Optional[str] = None
    completion_follow_up_no_node_id: Optional[str] = None
    completion_follow_up_enabled: bool = False
    completion_follow_up_delay_minutes: Optional[int] = None
    completion_follow_up_message: Optional[str] = None

    def get(self, node_id: Optional[str]) -> Optional[Node]:
        if not node_id:
            return None
        return self.nodes.get(node_id)

    @property
    def start_node(self) -> Node:
        return self.nodes[self.start_node_id]

    @property
    def end_node(self) -> Optional[Node]:
        return self.nodes.get(END)
