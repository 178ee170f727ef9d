"""Well-known actor ids for records written by the engine itself."""

from uuid import UUID

# Background jobs and webhooks act as the system actor.
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")
