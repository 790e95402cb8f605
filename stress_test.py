import requests
import threading
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

BASE_URL = "http://localhost:5000"
HEADERS = {"X-Actor-Id": "stress-test", "X-Actor-Role": "super_admin"}

TOTAL_USERS = 200        # concurrent registrations
TOTAL_SEATS = 20
MULTI_SHIFT_PROBABILITY = 0.3   # 30% of users ask for two shifts at once
MAX_RETRIES = 2

lock = threading.Lock()

results = {
    "registered": 0,
    "conflict": 0,
    "other_failure": 0,
}


def onboard_library():
    r = requests.post(
        f"{BASE_URL}/libraries",
        json={"name": f"Stress Library {int(time.time())}", "total_seats": TOTAL_SEATS},
        headers=HEADERS,
        timeout=15,
    )
    r.raise_for_status()
    library = r.json()
    grid = requests.get(f"{BASE_URL}/libraries/{library['id']}/seats/grid", headers=HEADERS, timeout=15)
    grid.raise_for_status()
    return library, [seat["id"] for seat in grid.json()["seats"]]


def get_seat_grid(library_id):
    r = requests.get(f"{BASE_URL}/libraries/{library_id}/seats/grid", headers=HEADERS, timeout=15)
    r.raise_for_status()
    return r.json()


def user_flow(user_id, library_id, seat_ids, shift_ids):
    """
    Simulates a single front-desk registration:
    1. Picks a random seat and one or two shifts
    2. Tries to register without checking availability first
    """
    chosen_shifts = random.sample(shift_ids, 2 if random.random() < MULTI_SHIFT_PROBABILITY else 1)
    body = {
        "student": {
            "student_name": f"Stress User {user_id}",
            "mobile_no": f"9{user_id:09d}",
            "gender": random.choice(["male", "female"]),
            "admission_date": "2026-01-01",
        },
        "shift_ids": chosen_shifts,
        "seat_id": random.choice(seat_ids),
        "plan_start_date": "2026-01-01",
        "plan_end_date": "2026-01-31",
        "subscription_cost": "1000",
        "paid_amount": str(random.choice([0, 250, 1000])),
    }

    for attempt in range(MAX_RETRIES):
        try:
            resp = requests.post(
                f"{BASE_URL}/libraries/{library_id}/registrations",
                json=body,
                headers=HEADERS,
                timeout=5,
            )

            with lock:
                if resp.status_code == 201:
                    results["registered"] += 1
                elif resp.status_code == 409:
                    results["conflict"] += 1
                else:
                    results["other_failure"] += 1
            return

        except requests.RequestException:
            time.sleep(0.2)

    with lock:
        results["other_failure"] += 1


def run_stress_test():
    library, seat_ids = onboard_library()
    shift_ids = [shift["id"] for shift in library["shifts"]]
    print(f"\n🚀 Starting stress test with {TOTAL_USERS} concurrent registrations on library {library['id']}\n")

    start_time = time.time()

    with ThreadPoolExecutor(max_workers=50) as executor:
        futures = [
            executor.submit(user_flow, i, library["id"], seat_ids, shift_ids)
            for i in range(TOTAL_USERS)
        ]
        for _ in as_completed(futures):
            pass

    duration = time.time() - start_time

    print("\n✅ Stress Test Completed")
    print(f"⏱  Duration: {duration:.2f}s\n")

    for k, v in results.items():
        print(f"{k:15}: {v}")

    # Critical invariant check: one occupant per (seat, shift)
    grid = get_seat_grid(library["id"])
    occupied = [
        (a["seat_id"], a["shift_id"])
        for a in grid["allocations"]
        if a["status"] == "occupied"
    ]
    capacity = TOTAL_SEATS * len(shift_ids)

    print(f"\n🧮 Occupied seat-shift slots: {len(occupied)} / {capacity}")

    if len(occupied) != len(set(occupied)):
        print("❌ ERROR: Double booking detected!")
    else:
        print("✅ No double booking detected")

    if len(occupied) > capacity:
        print("❌ ERROR: More allocations than seat-shift slots!")


if __name__ == "__main__":
    run_stress_test()
