import os
import sys
import time

import requests

BASE_URL = os.getenv("WORKERFLEET_URL", "http://127.0.0.1:8000")
TERMINAL = ("completed", "partial", "failed")

def run_job(path, payload):
    response = requests.post(f"{BASE_URL}/jobs/{path}", json=payload)
    if response.status_code != 202:
        print(f"Failed to submit {path} job: {response.status_code} {response.text}")
        return None

    job = response.json()
    job_id = job["id"]
    print(f"Submitted {job['type']} job {job_id} with {job['total_tasks']} task(s)")

    for _ in range(60):  # Wait up to 60 seconds
        time.sleep(1)
        job = requests.get(f"{BASE_URL}/jobs/{job_id}").json()
        print(f"Status: {job['status']} ({job['completed_tasks']} ok, {job['failed_tasks']} failed)")
        if job["status"] in TERMINAL:
            break
    else:
        print("Job timed out.")
        return None

    for task in requests.get(f"{BASE_URL}/jobs/{job_id}/tasks").json():
        outcome = task["result"] if task["status"] == "success" else task["error"]
        print(f"  {task['account_id']} {task['worker_name'] or ''} -> {task['status']}: {outcome}")
    return job

def test_workflow(account_ids):
    print("Starting End-to-End Test...")

    # 1. Credentials
    print("1. Checking account credentials...")
    job = run_job("health-check", {"account_ids": account_ids})
    if job is None or job["status"] == "failed":
        print("Verification Failed: no account could authenticate.")
        return

    # 2. Inventory
    print("2. Listing workers...")
    job = run_job("list", {"account_ids": account_ids})
    if job is None:
        return

    # 3. Retry whatever failed, once
    if job["status"] == "partial":
        print("3. Retrying failed tasks...")
        requests.post(f"{BASE_URL}/jobs/{job['id']}/retry", json={})
        time.sleep(2)
        job = requests.get(f"{BASE_URL}/jobs/{job['id']}").json()
        print(f"Status after retry: {job['status']}")

    print("Verification Successful." if job["status"] == "completed" else "Verification finished with failures.")

if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python verify_system.py ACCOUNT_ID [ACCOUNT_ID ...]")
        sys.exit(1)
    test_workflow(sys.argv[1:])
