# /leadflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the API and the scheduler.

# Conversation metrics
bot_turns_counter = Counter('bot_turns_total', 'Conversation engine turns by outcome', ['outcome'])
outbound_messages_counter = Counter('outbound_messages_total', 'Messages sent to the WhatsApp gateway', ['message_type', 'status'])
inbound_messages_counter = Counter('inbound_messages_total', 'Inbound webhook messages', ['message_type', 'status'])
follow_ups_counter = Counter('follow_ups_total', 'Follow-up prompts and resumes', ['kind', 'status'])

# Infrastructure metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
lock_operations_counter = Counter('conversation_lock_operations_total', 'Conversation lock acquisitions', ['backend', 'status'])

# Security Metrics
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
