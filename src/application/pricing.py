from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from src.domain.value_objects import SlotRef
from src.infrastructure.repositories.slot_repository import SlotRepository


class PricingProvider(Protocol):
    """Outbound pricing collaborator. The result is treated as opaque."""

    def get_unit_price(self, slot_ref: SlotRef) -> Decimal:
        ...


class CatalogPricing:
    """Per-slot price override if set, otherwise the experience list price."""

    def __init__(self, db: Session):
        self.slots = SlotRepository(db)

    def get_unit_price(self, slot_ref: SlotRef) -> Decimal:
        slot = self.slots.get(slot_ref)
        if slot.price_override is not None:
            return Decimal(slot.price_override)
        experience = self.slots.get_experience(slot_ref.experience_id)
        return Decimal(experience.price)
