"""
Order tickets sent to the shop printer through the PrintNode API.

Printing is best effort: `notify` never raises and its result has no bearing on the order.
"""
import base64
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from config import settings

logger = logging.getLogger("bloomshop.fulfillment")

SOURCE = "Bloomshop Order System"


def _money(cents: int) -> str:
    return f"${cents // 100}.{cents % 100:02d}"


def render_ticket(order: Dict[str, Any]) -> str:
    delivery = order.get("delivery") or {}
    recipient = order.get("recipient") or {}
    lines: List[str] = [
        f"ORDER {order.get('orderNumber')}",
        f"Status: {order.get('status')}",
        "",
        "RECIPIENT",
        f"  {recipient.get('name')}",
        f"  {recipient.get('phone')}",
        f"  {recipient.get('email')}",
        "",
        f"{str(delivery.get('method', '')).upper()} {delivery.get('date')} {delivery.get('time')}",
    ]
    address = delivery.get("address")
    if delivery.get("method") == "delivery" and address:
        if address.get("company"):
            lines.append(f"  {address['company']}")
        lines.append(f"  {address.get('street')}")
        lines.append(f"  {address.get('city')}, {address.get('province')} {address.get('postalCode')}")
    if delivery.get("instructions"):
        lines.append(f"  Instructions: {delivery['instructions']}")
    if order.get("occasion"):
        lines += ["", f"Occasion: {order['occasion']}"]
    if order.get("cardMessage"):
        lines += ["", "CARD MESSAGE", f"  {order['cardMessage']}"]
    lines += ["", "ITEMS"]
    for item in order.get("items", []):
        tier = f" ({item['tierName']})" if item.get("tierName") else ""
        lines.append(f"  {item['quantity']} x {item['name']}{tier}  {_money(item['total'])}")
    lines += [
        "",
        f"Subtotal  {_money(order.get('subtotal', 0))}",
        f"Delivery  {_money(order.get('deliveryFee', 0))}",
        f"Tax       {_money(order.get('taxAmount', 0))}",
        f"Total     {_money(order.get('total', 0))}",
    ]
    return "\n".join(lines) + "\n"


class PrintClient:
    def __init__(self, api_key: str, base_url: str, timeout: int):
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (api_key, "")

    def first_printer_id(self) -> Optional[int]:
        resp = self.session.get(f"{self.base_url}/printers", timeout=self.timeout)
        resp.raise_for_status()
        printers = resp.json() or []
        return printers[0]["id"] if printers else None

    def create_job(self, printer_id: int, title: str, content: str) -> Any:
        payload = {
            "printerId": int(printer_id),
            "title": title,
            "contentType": "raw_base64",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "source": SOURCE,
        }
        resp = self.session.post(f"{self.base_url}/printjobs", json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


def get_client() -> Optional[PrintClient]:
    if not settings.printnode_api_key:
        return None
    return PrintClient(settings.printnode_api_key, settings.printnode_base_url, settings.print_timeout_seconds)


def notify(order: Dict[str, Any]) -> Dict[str, Any]:
    number = order.get("orderNumber")
    try:
        client = get_client()
        if client is None:
            logger.info("Print service not configured; skipping ticket for order %s", number)
            return {"success": False, "error": "Print service not configured"}
        printer_id = settings.printnode_printer_id or client.first_printer_id()
        if not printer_id:
            logger.warning("No printer available for order %s", number)
            return {"success": False, "error": "No printer available"}
        recipient = (order.get("recipient") or {}).get("name", "")
        job_id = client.create_job(printer_id, f"Order {number} - {recipient}", render_ticket(order))
        logger.info("Print job %s submitted for order %s", job_id, number)
        return {"success": True, "jobId": job_id}
    except Exception as exc:
        logger.exception("Print job failed for order %s", number)
        return {"success": False, "error": str(exc)}


def dispatch(order: Dict[str, Any], schedule: Optional[Callable[..., Any]] = None) -> None:
    """Queue `notify` without waiting for it (request background task, or a daemon thread)."""
    try:
        if schedule is not None:
            schedule(notify, order)
        else:
            threading.Thread(target=notify, args=(order,), daemon=True).start()
    except Exception:
        logger.exception("Could not queue print job for order %s", order.get("orderNumber"))
