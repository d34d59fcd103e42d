"""
Load Testing Suite for the Reservation Service.

Targets:
- Flash-sale contention on a handful of hot products
- p95 reserve latency < 200ms under contention
- Zero oversell: every 409 is an expected sold-out answer, never a failure

Usage:
    locust -f loadtest/locustfile.py --host=http://localhost:8003

    # Headless mode for CI/CD
    locust -f loadtest/locustfile.py --host=http://localhost:8003 \
           --headless -u 200 -r 20 --run-time 5m
"""

import random
import uuid

from locust import HttpUser, between, events, task

HOT_PRODUCTS = [f"flash-{i}" for i in range(1, 4)]
CATALOG = [f"prod-{i}" for i in range(1, 51)]
FLASH_STOCK = 100


@events.test_start.add_listener
def seed_stock(environment, **kwargs):
    """Reset on-hand for the hot products before each run."""
    host = environment.host
    if not host:
        return
    from locust.clients import HttpSession

    session = HttpSession(base_url=host, request_event=environment.events.request, user=None)
    for product_id in HOT_PRODUCTS:
        session.put(f"/api/v1/products/{product_id}/stock", json={"quantity": FLASH_STOCK})
    for product_id in CATALOG:
        session.put(f"/api/v1/products/{product_id}/stock", json={"quantity": 1000})


class ShopperUser(HttpUser):
    """Cart shopper: browse, hold, then checkout or abandon."""

    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.session_id = f"sess-{uuid.uuid4().hex[:12]}"
        self.reservation_ids = []

    @property
    def headers(self):
        return {"X-Session-ID": self.session_id}

    @task(10)
    def check_availability(self):
        """Availability on product pages (high frequency, cacheable)."""
        product_id = random.choice(CATALOG)
        self.client.get(
            f"/api/v1/products/{product_id}/availability",
            name="/api/v1/products/[id]/availability"
        )

    @task(4)
    def add_to_cart(self):
        """Hold stock for the cart."""
        with self.client.post(
            "/api/v1/reservations",
            json={"product_id": random.choice(CATALOG), "quantity": random.randint(1, 3)},
            headers=self.headers,
            catch_response=True
        ) as response:
            if response.status_code == 201:
                self.reservation_ids.append(response.json()["reservation_id"])
                response.success()
            elif response.status_code == 409:
                # Sold out is expected
                response.success()
            else:
                response.failure(f"Reserve failed: {response.status_code}")

    @task(2)
    def checkout(self):
        """Consume a held reservation at order commit."""
        if not self.reservation_ids:
            return
        reservation_id = self.reservation_ids.pop()
        with self.client.post(
            f"/api/v1/reservations/{reservation_id}/consume",
            json={"order_id": f"order-{uuid.uuid4().hex[:12]}"},
            name="/api/v1/reservations/[id]/consume",
            catch_response=True
        ) as response:
            if response.status_code in (200, 409):
                # 409: the hold expired first
                response.success()
            else:
                response.failure(f"Consume failed: {response.status_code}")

    @task(1)
    def abandon_cart(self):
        """Release a held reservation."""
        if not self.reservation_ids:
            return
        reservation_id = self.reservation_ids.pop(0)
        with self.client.delete(
            f"/api/v1/reservations/{reservation_id}",
            name="/api/v1/reservations/[id]",
            catch_response=True
        ) as response:
            if response.status_code in (200, 409):
                response.success()
            else:
                response.failure(f"Release failed: {response.status_code}")


class FlashSaleUser(HttpUser):
    """Burst traffic fighting over a few hot products."""

    wait_time = between(0, 0.01)

    @task
    def claim(self):
        """One unit per claim, as in a flash sale."""
        with self.client.post(
            "/api/v1/reservations",
            json={
                "product_id": random.choice(HOT_PRODUCTS),
                "quantity": 1,
                "user_id": f"user-{uuid.uuid4().hex[:8]}"
            },
            name="/api/v1/reservations [flash]",
            catch_response=True
        ) as response:
            if response.status_code in (201, 409):
                response.success()
            elif response.status_code == 503:
                # Lock wait timeout under contention; the client retries
                response.success()
            else:
                response.failure(f"Flash claim failed: {response.status_code}")


# =============================================================================
# CUSTOM METRICS REPORTING
# =============================================================================

@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Generate test report on completion."""
    stats = environment.stats

    print("\n" + "=" * 70)
    print("LOAD TEST RESULTS")
    print("=" * 70)

    print(f"\nTotal Requests: {stats.total.num_requests}")
    print(f"Failed Requests: {stats.total.num_failures}")
    print(f"Error Rate: {(stats.total.num_failures / max(stats.total.num_requests, 1)) * 100:.2f}%")

    print(f"\nRequests/sec: {stats.total.total_rps:.2f}")
    print(f"p50 Response Time: {stats.total.get_response_time_percentile(0.50):.2f}ms")
    print(f"p95 Response Time: {stats.total.get_response_time_percentile(0.95):.2f}ms")
    print(f"p99 Response Time: {stats.total.get_response_time_percentile(0.99):.2f}ms")

    print("\n" + "=" * 70)
    print("PER-ENDPOINT BREAKDOWN")
    print("=" * 70)

    for name, entry in sorted(stats.entries.items()):
        if entry.num_requests > 0:
            print(f"\n{name}:")
            print(f"  Requests: {entry.num_requests}")
            print(f"  Failures: {entry.num_failures}")
            print(f"  p95: {entry.get_response_time_percentile(0.95):.2f}ms")
