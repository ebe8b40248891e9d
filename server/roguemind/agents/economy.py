from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from roguemind.agents.stats import NeedType


class ItemType(str, Enum):
    FOOD = "food"
    DRINK = "drink"
    POTION = "potion"
    WEAPON = "weapon"
    ARMOR = "armor"
    AMMO = "ammo"
    MATERIAL = "material"


# consumable that restores each vital
RESTORES: dict[NeedType, ItemType] = {
    NeedType.HEALTH: ItemType.POTION,
    NeedType.HUNGER: ItemType.FOOD,
    NeedType.THIRST: ItemType.DRINK,
}


@dataclass
class InventoryItem:
    name: str
    quantity: int = 1
    price: int = 0
    item_type: ItemType = ItemType.MATERIAL

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "price": self.price,
            "type": self.item_type.value,
        }


@dataclass(frozen=True)
class EconomySnapshot:
    currency: int = 0
    capacity: int = 12
    items: tuple[InventoryItem, ...] = ()

    @property
    def used_slots(self) -> int:
        return len(self.items)

    @property
    def fullness(self) -> float:
        return self.used_slots / self.capacity if self.capacity > 0 else 1.0

    def has_item_type(self, item_type: ItemType) -> bool:
        return any(item.item_type == item_type and item.quantity > 0 for item in self.items)

    def can_restore(self, need: NeedType) -> bool:
        item_type = RESTORES.get(need)
        return item_type is not None and self.has_item_type(item_type)


@dataclass
class Economy:
    currency: int = 0
    capacity: int = 12
    items: list[InventoryItem] = field(default_factory=list)

    def add_item(self, item: InventoryItem) -> bool:
        for existing in self.items:
            if existing.name == item.name and existing.item_type == item.item_type:
                existing.quantity += item.quantity
                return True
        if len(self.items) >= self.capacity:
            return False
        self.items.append(item)
        return True

    def remove_item(self, name: str, quantity: int = 1) -> bool:
        for existing in self.items:
            if existing.name != name:
                continue
            if existing.quantity < quantity:
                return False
            existing.quantity -= quantity
            if existing.quantity <= 0:
                self.items.remove(existing)
            return True
        return False

    def consume(self, item_type: ItemType) -> InventoryItem | None:
        for existing in self.items:
            if existing.item_type == item_type and existing.quantity > 0:
                self.remove_item(existing.name, 1)
                return existing
        return None

    def remove_types(self, item_types: Iterable[ItemType]) -> int:
        doomed = set(item_types)
        before = len(self.items)
        self.items = [item for item in self.items if item.item_type not in doomed]
        return before - len(self.items)

    def clear_items(self) -> None:
        self.items.clear()

    def add_currency(self, amount: int) -> None:
        self.currency = max(0, self.currency + amount)

    def snapshot(self) -> EconomySnapshot:
        return EconomySnapshot(
            currency=self.currency,
            capacity=self.capacity,
            items=tuple(
                InventoryItem(item.name, item.quantity, item.price, item.item_type) for item in self.items
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "capacity": self.capacity,
            "used": len(self.items),
            "items": [item.to_payload() for item in self.items],
        }
