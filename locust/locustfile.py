import os

from locust import HttpUser, between, task

# Matches the service's --prob so locust's own failure counter only shows surprises.
EXPECT_FAILURES = os.environ.get("PINGMETRICS_EXPECT_FAILURES", "1") == "1"


class PingUser(HttpUser):
    # Wait between 0.1 and 0.5 seconds between tasks
    wait_time = between(0.1, 0.5)

    @task(10)
    def ping(self):
        # A 500 is a designed probe outcome, not a load-test failure.
        with self.client.get("/ping", catch_response=True) as response:
            if response.status_code == 200 and response.text == "pong":
                response.success()
            elif response.status_code == 500 and EXPECT_FAILURES:
                response.success()
            else:
                response.failure(f"Unexpected /ping answer {response.status_code}")

    @task(1)
    def scrape(self):
        # Ask for OpenMetrics like a Prometheus server with exemplar storage would.
        self.client.get(
            "/metrics",
            headers={"Accept": "application/openmetrics-text; version=1.0.0"},
        )
