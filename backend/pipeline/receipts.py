"""
Receipt Generator
=================
Renders a downloadable receipt once per settled order and serves it back
by order id. Receipts are plain text; PDF rendering is handled elsewhere.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import structlog

from schemas.order_definitions import Order

logger = structlog.get_logger().bind(component="receipts")


class ReceiptConfig:
    RECEIPTS_DIR = os.getenv("RECEIPTS_DIR", "receipts")


config = ReceiptConfig()


class IReceiptGenerator(ABC):

    @abstractmethod
    async def generate(self, order: Order) -> str:
        """Render the receipt and return its location."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Path]:
        pass


def _money(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def render_receipt(order: Order) -> str:
    lines: List[str] = [
        "ORDER RECEIPT",
        "=" * 40,
        f"Order ID: {order.order_id}",
        f"Customer: {order.user_id}",
        f"Date: {order.created_at.isoformat()}",
        f"Payment Method: {order.payment_info.method.value}",
        f"Payment Status: {order.payment_info.status.value}",
        "",
        "Order Items:",
    ]
    for index, item in enumerate(order.order_items, start=1):
        lines.append(
            f"{index}. {item.name} - {_money(item.unit_price)} x {item.quantity} = {_money(item.line_total)}"
        )
    lines += [
        "",
        f"Subtotal: {_money(order.items_price)}",
        f"Tax: {_money(order.tax_price)}",
        f"Shipping: {_money(order.shipping_price)}",
        f"Total: {_money(order.total_price)}",
    ]
    return "\n".join(lines) + "\n"


class FileReceiptGenerator(IReceiptGenerator):
    """Writes `receipt-<order_id>.txt` under a directory."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or config.RECEIPTS_DIR)

    def _path_for(self, order_id: str) -> Path:
        # Order ids are hex uuids; anything else never reaches the filesystem.
        safe_id = "".join(ch for ch in order_id if ch.isalnum())
        return self.directory / f"receipt-{safe_id}.txt"

    def _write(self, order: Order) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(order.order_id)
        path.write_text(render_receipt(order), encoding="utf-8")
        return path

    async def generate(self, order: Order) -> str:
        path = await asyncio.to_thread(self._write, order)
        logger.info("receipt_generated", order_id=order.order_id, path=str(path))
        return str(path)

    async def get(self, order_id: str) -> Optional[Path]:
        path = self._path_for(order_id)
        exists = await asyncio.to_thread(path.is_file)
        return path if exists else None
