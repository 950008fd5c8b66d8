#!/usr/bin/env python3
"""
Live Scenario Runner: sends real HTTP requests to a running relay.

Unlike pytest (which uses an isolated in-memory SQLite), this script hits the
actual running server. The relay must run with DEV_MODE=true so the script
can sign users in through /auth/dev-login.

Credentials are read from .env:
    AGENTJOBS_URL             relay URL (default http://localhost:5005)
    AGENTJOBS_AGENT_HANDLE    Twitter handle of the seller agent (must exist on Twitter)
    AGENTJOBS_VERIFIER_TOKEN  bearer token issued to the VERIFICATION_AGENT user

Usage:
    python server.py
    python scripts/live_scenario.py                   # full lifecycle
    python scripts/live_scenario.py --scenario race   # concurrent start race

Scenarios:
    lifecycle: offer, claim, token, fund, start, deliver, complete
    race:      several concurrent starts on one funded job; exactly one wins
"""

import argparse
import os
import sys
import time
import uuid
import requests
from concurrent.futures import ThreadPoolExecutor, as_completed
from dotenv import load_dotenv

load_dotenv()

BASE_URL = os.getenv("AGENTJOBS_URL", "http://localhost:5005")
AGENT_HANDLE = os.getenv("AGENTJOBS_AGENT_HANDLE", "")
VERIFIER_TOKEN = os.getenv("AGENTJOBS_VERIFIER_TOKEN", "")

# ---------------------------------------------------------------------------
# ANSI helpers
# ---------------------------------------------------------------------------

CYAN = "\033[96m"
GREEN = "\033[92m"
RED = "\033[91m"
DIM = "\033[2m"
BOLD = "\033[1m"
RESET = "\033[0m"

_pass_count = 0
_fail_count = 0


def ok(label, detail=""):
    global _pass_count
    _pass_count += 1
    extra = f"  {DIM}{detail}{RESET}" if detail else ""
    print(f"  {GREEN}✓{RESET} {label}{extra}")


def fail(label, detail=""):
    global _fail_count
    _fail_count += 1
    extra = f"  {DIM}{detail}{RESET}" if detail else ""
    print(f"  {RED}✗{RESET} {label}{extra}")


def check(label, condition, detail=""):
    if condition:
        ok(label, detail)
    else:
        fail(label, detail)
    return condition


def section(title):
    print(f"\n{BOLD}{CYAN}--- {title} ---{RESET}")


def info(msg):
    print(f"  {DIM}{msg}{RESET}")


def summary():
    total = _pass_count + _fail_count
    print(f"\n{BOLD}{'=' * 55}{RESET}")
    if _fail_count == 0:
        print(f"  {GREEN}{BOLD}{_pass_count}/{total} checks passed{RESET}")
    else:
        print(f"  {RED}{BOLD}{_fail_count} failed{RESET} / {_pass_count} passed (total {total})")
    print()
    return _fail_count == 0


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

class Actor:
    """A signed-in user (session cookie) with an optional bearer token."""

    def __init__(self, username, twitter_handle=None):
        self.username = username
        self.session = requests.Session()
        self.token = None
        payload = {"username": username}
        if twitter_handle:
            payload["twitter_handle"] = twitter_handle
        r = self.session.post(f"{BASE_URL}/auth/dev-login", json=payload, timeout=10)
        r.raise_for_status()
        self.user_id = r.json()["id"]

    def bearer(self):
        return {"Authorization": f"Bearer {self.token}"}

    def request(self, method, path, use_token=False, **kwargs):
        headers = self.bearer() if use_token else {}
        return self.session.request(method, f"{BASE_URL}{path}", headers=headers, timeout=15, **kwargs)


def verifier_put(path):
    return requests.put(f"{BASE_URL}{path}",
                        headers={"Authorization": f"Bearer {VERIFIER_TOKEN}"}, timeout=15)


def wait_for_server():
    """Block until the server responds to /health."""
    for _ in range(10):
        try:
            r = requests.get(f"{BASE_URL}/health", timeout=3)
            if r.status_code == 200:
                return True
        except requests.ConnectionError:
            pass
        time.sleep(1)
    return False


def _prepare(uid):
    """Buyer + claimed seller with a token, and one funded job. Returns (buyer, seller, job_id)."""
    buyer = Actor(f"buyer-{uid}")
    ok("Buyer signed in", buyer.user_id)

    r = buyer.request("POST", f"/agents/{AGENT_HANDLE}/offers", json={
        "amount": 1.5, "currency": "SOL", "description": f"Live scenario job ({uid})",
    })
    if not check("Offer + job created", r.status_code == 200, r.text[:120]):
        return None
    job_id = r.json()["job_id"]

    seller = Actor(f"seller-{AGENT_HANDLE}", twitter_handle=AGENT_HANDLE)
    r = seller.request("POST", "/agents/claim")
    check("Seller claimed agent", r.status_code == 200, r.text[:120])

    r = seller.request("POST", "/tokens", json={"name": f"live-{uid}", "expires_in": 1})
    if not check("Seller token issued", r.status_code == 200, r.text[:120]):
        return None
    seller.token = r.json()["token"]

    r = verifier_put(f"/jobs/{job_id}/fund")
    check("Verifier funded job", r.status_code == 200 and r.json()["status"] == "funded", r.text[:120])
    return buyer, seller, job_id


# ---------------------------------------------------------------------------
# Scenario: lifecycle
# ---------------------------------------------------------------------------

def scenario_lifecycle():
    """created -> funded -> started -> delivered -> completed."""
    uid = uuid.uuid4().hex[:6]

    section("Setup")
    prepared = _prepare(uid)
    if not prepared:
        return
    buyer, seller, job_id = prepared

    section("Guards")
    r = buyer.request("PUT", f"/jobs/{job_id}/fund")
    check("Buyer cannot fund", r.status_code == 403, f"HTTP {r.status_code}")
    r = verifier_put(f"/jobs/{job_id}/complete")
    check("Complete before delivery rejected", r.status_code == 400, r.json().get("error", ""))

    section("Seller work")
    r = seller.request("PUT", f"/jobs/{job_id}/start", use_token=True)
    check("Seller started job", r.status_code == 200, r.text[:120])
    r = seller.request("PUT", f"/jobs/{job_id}/deliver", use_token=True, json={"delivered_url": ""})
    check("Empty delivery rejected", r.status_code == 400)
    r = seller.request("PUT", f"/jobs/{job_id}/deliver", use_token=True,
                       json={"delivered_url": f"https://example.com/delivery/{uid}"})
    check("Seller delivered job", r.status_code == 200, r.json().get("message", ""))

    section("Verification")
    r = verifier_put(f"/jobs/{job_id}/complete")
    check("Verifier completed job", r.status_code == 200 and r.json()["status"] == "completed")

    r = buyer.request("GET", "/offers")
    offers = {o["job"]["id"]: o for o in r.json().get("offers", []) if o.get("job")}
    check("Offer mirrors job status", offers.get(job_id, {}).get("status") == "completed")


# ---------------------------------------------------------------------------
# Scenario: race
# ---------------------------------------------------------------------------

def scenario_race():
    """Concurrent starts on one funded job: exactly one succeeds."""
    uid = uuid.uuid4().hex[:6]

    section("Setup")
    prepared = _prepare(uid)
    if not prepared:
        return
    _, seller, job_id = prepared

    section("Concurrent starts (6)")

    def _start(_):
        return seller.request("PUT", f"/jobs/{job_id}/start", use_token=True)

    with ThreadPoolExecutor(max_workers=6) as pool:
        futures = [pool.submit(_start, i) for i in range(6)]
        results = [f.result() for f in as_completed(futures)]

    won = sum(1 for r in results if r.status_code == 200)
    lost = sum(1 for r in results if r.status_code == 400)
    ok(f"{won} accepted, {lost} rejected")
    check("Exactly one start succeeded", won == 1)
    check("Every other start saw the state guard", lost == len(results) - 1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

SCENARIOS = {
    "lifecycle": scenario_lifecycle,
    "race": scenario_race,
}


def main():
    global BASE_URL

    parser = argparse.ArgumentParser(
        description="AgentJobs Live Scenario Runner: exercises real HTTP endpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python scripts/live_scenario.py\n"
               "  python scripts/live_scenario.py --scenario race --url http://localhost:5006\n",
    )
    parser.add_argument(
        "--scenario", "-s",
        choices=list(SCENARIOS.keys()),
        default="lifecycle",
        help="Scenario to run (default: lifecycle)",
    )
    parser.add_argument(
        "--url", "-u",
        default=None,
        help=f"Server URL (default: {BASE_URL} or $AGENTJOBS_URL)",
    )
    args = parser.parse_args()

    if args.url:
        BASE_URL = args.url.rstrip("/")

    print(f"{BOLD}{CYAN}AgentJobs Live Scenario Runner{RESET}")
    print(f"  Server:   {BASE_URL}")
    print(f"  Scenario: {args.scenario}")

    if not AGENT_HANDLE or not VERIFIER_TOKEN:
        print(f"\n{RED}Set AGENTJOBS_AGENT_HANDLE and AGENTJOBS_VERIFIER_TOKEN in .env{RESET}")
        sys.exit(2)

    section("Health Check")
    if not check("Server reachable", wait_for_server()):
        print(f"\n{RED}Cannot connect to {BASE_URL}. Is the server running?{RESET}")
        sys.exit(1)

    SCENARIOS[args.scenario]()

    success = summary()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
