# /leadflow/config/strings.py

# User-facing strings sent by the engine itself rather than by a flow node.
# Flow node texts live in the bot_nodes collection.

INVALID_EMAIL_PROMPT = (
    "Invalid email. Please enter a valid email address (example: name@example.com)\n\n"
    "Or type *skip* to continue without email."
)

# Stall follow-up ("did an agent reach you?")
AGENT_CONTACT_FOLLOW_UP = "Hello! Did one of our agents get in touch with you about your enquiry?"

# Per-node nudge and post-completion follow-up fallbacks
NODE_FOLLOW_UP_DEFAULT = "Are you still there?"
COMPLETION_FOLLOW_UP_DEFAULT = "Did you find what you were looking for?"

FOLLOW_UP_YES_TITLE = "Yes"
FOLLOW_UP_NO_TITLE = "No"

DEFAULT_LIST_BUTTON_TEXT = "Options"
