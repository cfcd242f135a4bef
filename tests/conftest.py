import pytest

INVENTORY_SOURCE = '''"""Inventory bookkeeping for a small shop.

Example:
    >>> inventory = Inventory()
    >>> inventory.add_product(Product("sku-1", "Tea", 3.5))
"""
from abc import ABC, abstractmethod


class InventoryError(Exception):
    """Raised when an inventory operation is not allowed."""


class Product:
    """A product that can be stocked."""

    def __init__(self, sku: str, name: str, price: float, quantity: int = 0) -> None:
        if price < 0:
            raise InventoryError(f"Price of {sku} cannot be negative")
        self.sku = sku
        self.name = name
        self.price = price
        self.quantity = quantity


class Storage(ABC):
    """Where products live."""

    @abstractmethod
    def add_product(self, product: Product) -> None:
        """Store a product."""


class Inventory(Storage):
    """In-memory inventory."""

    def __init__(self) -> None:
        self.products = {}

    def add_product(self, product: Product) -> None:
        self.products[product.sku] = product

    def sell(self, sku: str, units: int = 1) -> None:
        product = self.products[sku]
        if units > product.quantity:
            raise InventoryError(f"Only {product.quantity} units of {sku} in stock")
        product.quantity -= units


def test_add_product():
    inventory = Inventory()
    inventory.add_product(Product("sku-1", "Tea", 3.5))
    assert "sku-1" in inventory.products


def test_sell_rejects_overselling():
    inventory = Inventory()
    inventory.add_product(Product("sku-1", "Tea", 3.5, quantity=1))
    try:
        inventory.sell("sku-1", 2)
    except InventoryError:
        pass
'''

MINIMAL_SOURCE = '''class Inventory:
    pass


class Product:
    pass


def restock(inventory, product):
    return inventory
'''

BROKEN_SOURCE = '''"""Inventory that does not parse."""

def broken(:
    return Inventory
'''


@pytest.fixture
def inventory_source():
    return INVENTORY_SOURCE


@pytest.fixture
def minimal_source():
    return MINIMAL_SOURCE


@pytest.fixture
def broken_source():
    return BROKEN_SOURCE
