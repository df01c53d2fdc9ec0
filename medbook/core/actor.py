from dataclasses import dataclass

CLIENT = 'client'
PRACTITIONER = 'practitioner'
ADMIN = 'admin'
SYSTEM = 'system'

ACTOR_ROLES = (CLIENT, PRACTITIONER, ADMIN, SYSTEM)


@dataclass(frozen=True)
class Actor:
    """The authenticated party performing an operation."""

    user_id: int | None
    role: str

    @property
    def is_system(self) -> bool:
        return self.role in (SYSTEM, ADMIN)


SYSTEM_ACTOR = Actor(user_id=None, role=SYSTEM)
