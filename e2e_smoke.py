#!/usr/bin/env python3
"""
Canteen service - live smoke scenarios

Run against a started server:
  python e2e_smoke.py

Optional env:
  CANTEEN_BASE=http://localhost:8000
  DEBUG=1
"""

import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List

import requests


class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


BASE = os.getenv("CANTEEN_BASE", "http://localhost:8000")
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "yes"}

ADMIN = {"X-User-Id": "smoke-admin", "X-User-Name": "Counter", "X-User-Role": "admin"}
STUDENT_A = {"X-User-Id": "smoke-a", "X-User-Name": "Student A", "X-User-Email": "a@college.edu"}
STUDENT_B = {"X-User-Id": "smoke-b", "X-User-Name": "Student B", "X-User-Email": "b@college.edu"}

INITIAL_COUNT = 5
PRICE = 100


@dataclass
class CheckResult:
    name: str
    success: bool
    details: str = ""


def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    if DEBUG:
        print(f"{Style.GRAY}… {method} {path} {kwargs.get('json', '')}{Style.RESET}")
    return requests.request(method, BASE + path, **kwargs)


def expect(resp: requests.Response, status: int, ctx: str) -> Dict[str, Any]:
    if resp.status_code != status:
        raise AssertionError(f"{ctx}: expected HTTP {status}, got {resp.status_code}, body={resp.text}")
    return resp.json()


def check(name: str, success: bool, details: str) -> CheckResult:
    (ok if success else fail)(f"{name}: {details}")
    return CheckResult(name, success, details)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", "/health").status_code == 200:
                ok("canteen service is healthy.")
                return True
        except requests.RequestException:
            pass
        time.sleep(1)
    fail(f"canteen service did not become healthy in {timeout} seconds.")
    return False


def remaining(item_id: str) -> int:
    return expect(http("GET", f"/api/v1/menu/items/{item_id}"), 200, "GET item")["remaining_count"]


def seed_item() -> str:
    section_title("Seed Menu Item")
    payload = {
        "name": f"Smoke Burger {uuid.uuid4().hex[:6]}",
        "description": "Seeded by the smoke run",
        "price": PRICE,
        "category": "smoke",
        "total_count": INITIAL_COUNT,
    }
    item = expect(http("POST", "/api/v1/menu/items", json=payload, headers=ADMIN), 201, "Create item")
    info(f"Created {item['name']} ({item['id']}) with {INITIAL_COUNT} in stock")
    return item["id"]


def place(item_id: str, quantity: int, headers: Dict[str, str]) -> requests.Response:
    body = {"items": [{"menu_item_id": item_id, "quantity": quantity}]}
    return http("POST", "/api/v1/orders", json=body, headers=headers)


def scenario_order_and_pickup(item_id: str) -> List[CheckResult]:
    section_title("Scenario 1 - Order, Oversell, Pickup")
    results = []

    order = expect(place(item_id, 2, STUDENT_A), 201, "Place order A")
    results.append(check("Order total", order["total_amount"] == 2 * PRICE, f"total={order['total_amount']}"))
    results.append(check("Stock reserved", remaining(item_id) == INITIAL_COUNT - 2, f"remaining={remaining(item_id)}"))

    oversell = place(item_id, INITIAL_COUNT, STUDENT_B)
    results.append(check("Oversell refused", oversell.status_code == 409, f"HTTP {oversell.status_code} {oversell.text}"))
    results.append(check("Stock untouched", remaining(item_id) == INITIAL_COUNT - 2, f"remaining={remaining(item_id)}"))

    scanned = expect(
        http("POST", "/api/v1/orders/verify-qr", json={"qr_code": order["qr_code"]}, headers=ADMIN), 200, "Verify QR"
    )
    results.append(check("Pickup fulfils order", scanned["status"] == "fulfilled", f"status={scanned['status']}"))

    rescan = http("POST", "/api/v1/orders/verify-qr", json={"qr_code": order["qr_code"]}, headers=ADMIN)
    results.append(check("Second scan refused", rescan.status_code == 409, f"HTTP {rescan.status_code}"))
    return results


def scenario_cancel_compensation(item_id: str) -> List[CheckResult]:
    section_title("Scenario 2 - Cancellation Returns Stock")
    before = remaining(item_id)
    order = expect(place(item_id, 1, STUDENT_B), 201, "Place order B")

    cancelled = expect(
        http("PUT", f"/api/v1/orders/{order['id']}/status", json={"status": "cancelled"}, headers=ADMIN),
        200,
        "Cancel order",
    )
    return [
        check("Order cancelled", cancelled["status"] == "cancelled", f"status={cancelled['status']}"),
        check("Stock restored", remaining(item_id) == before, f"expected {before}, got {remaining(item_id)}"),
    ]


def print_results(results: List[CheckResult]):
    passed = sum(1 for r in results if r.success)
    print(f"\n{Style.BOLD}================ SMOKE RESULTS ================{Style.RESET}")
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'✅' if r.success else '❌'} {r.name}{Style.RESET}  {Style.DIM}{r.details}{Style.RESET}")
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{len(results) - passed}{Style.RESET}")
    return passed == len(results)


def main():
    if not wait_for_health():
        sys.exit(1)

    results: List[CheckResult] = []
    try:
        item_id = seed_item()
        results.extend(scenario_order_and_pickup(item_id))
        results.extend(scenario_cancel_compensation(item_id))
    except (AssertionError, requests.RequestException) as e:
        fail(str(e))
        results.append(CheckResult("Run aborted", False, str(e)))

    sys.exit(0 if print_results(results) else 1)


if __name__ == "__main__":
    main()
