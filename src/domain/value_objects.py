from dataclasses import dataclass


@dataclass(frozen=True)
class SlotRef:
    """Identity of a bookable slot: (experience id, date, time)."""

    experience_id: str
    date: str
    time: str

    def __str__(self) -> str:
        return f"{self.experience_id}@{self.date}T{self.time}"


@dataclass(frozen=True)
class Payer:
    user_id: str
    name: str
    email: str


@dataclass(frozen=True)
class ParticipantInfo:
    name: str
    email: str
    phone: str = ""
