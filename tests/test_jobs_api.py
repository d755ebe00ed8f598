from __future__ import annotations

HEADERS = {"x-tenant-id": "tenant_a", "x-user-id": "dispatcher_1"}


def _create_vendor(client, **overrides) -> dict:
    payload = {"name": "Acme Plumbing", "specializations": ["plumbing"], "capacity_limit": 1, "rating": 4.5}
    payload.update(overrides)
    resp = client.post("/api/v1/vendors", json=payload, headers=HEADERS)
    assert resp.status_code == 201
    return resp.json()["data"]


def _create_job(client, **overrides) -> dict:
    payload = {
        "title": "Leaking kitchen sink",
        "customer_name": "Dana Reyes",
        "service_address": "12 Elm St",
        "service_type": "plumbing",
        "priority": "high",
    }
    payload.update(overrides)
    resp = client.post("/api/v1/jobs", json=payload, headers=HEADERS)
    assert resp.status_code == 201
    return resp.json()["data"]


def test_healthz_returns_envelope(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_health"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace_health"
    assert resp.headers["x-trace-id"] == "trace_health"


def test_create_job_assigns_sequential_number(client):
    first = _create_job(client)
    second = _create_job(client, title="Clogged drain")

    assert first["status"] == "new"
    assert first["created_by"] == "dispatcher_1"
    assert first["job_number"].startswith("JOB-")
    assert first["job_number"].endswith("-00001")
    assert second["job_number"].endswith("-00002")


def test_create_job_validation_error_uses_error_envelope(client):
    resp = client.post("/api/v1/jobs", json={"title": "", "priority": "urgent"}, headers=HEADERS)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert body["error"]["class"] == "validation"
    assert body["error"]["retryable"] is False


def test_unknown_job_returns_not_found(client):
    resp = client.get("/api/v1/jobs/job_missing", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "JOB_NOT_FOUND"


def test_unknown_route_returns_req_not_found(client):
    resp = client.get("/api/v1/nothing-here", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_jobs_are_tenant_scoped(client):
    job = _create_job(client)

    resp = client.get(f"/api/v1/jobs/{job['job_id']}", headers={"x-tenant-id": "tenant_b"})
    assert resp.status_code == 404

    listed = client.get("/api/v1/jobs", headers={"x-tenant-id": "tenant_b"}).json()["data"]
    assert listed["total"] == 0


def test_list_jobs_filters_and_sorts(client):
    _create_job(client, title="Low one", priority="low")
    _create_job(client, title="Critical one", priority="critical", service_type="electrical")
    _create_job(client, title="Medium one", priority="medium")

    resp = client.get("/api/v1/jobs?sort_by=priority&sort_desc=true", headers=HEADERS)
    data = resp.json()["data"]
    assert [j["priority"] for j in data["items"]] == ["critical", "medium", "low"]
    assert data["total"] == 3

    filtered = client.get("/api/v1/jobs?priority=low,medium&page_size=1", headers=HEADERS).json()["data"]
    assert filtered["total"] == 2
    assert len(filtered["items"]) == 1
    assert filtered["page_size"] == 1

    searched = client.get("/api/v1/jobs?search=critical", headers=HEADERS).json()["data"]
    assert [j["title"] for j in searched["items"]] == ["Critical one"]

    by_type = client.get("/api/v1/jobs?service_type=electrical", headers=HEADERS).json()["data"]
    assert by_type["total"] == 1


def test_update_job_records_audit_trail(client):
    job = _create_job(client)

    resp = client.put(f"/api/v1/jobs/{job['job_id']}", json={"priority": "critical"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["data"]["priority"] == "critical"

    logs = client.get(
        f"/api/v1/audit-logs?entity_name=Job&entity_id={job['job_id']}",
        headers=HEADERS,
    ).json()["data"]["items"]
    updated = [log for log in logs if log["action"] == "Updated"]
    assert updated[0]["old_values"] == {"priority": "high"}
    assert updated[0]["new_values"] == {"priority": "critical"}
    assert updated[0]["changed_by"] == "dispatcher_1"


def test_assign_revoke_round_trip_over_http(client):
    vendor = _create_vendor(client)
    job_a = _create_job(client)
    job_b = _create_job(client, title="Second job")

    assigned = client.post(
        f"/api/v1/jobs/{job_a['job_id']}/assignments",
        json={"vendor_id": vendor["vendor_id"], "notes": "call ahead"},
        headers=HEADERS,
    )
    assert assigned.status_code == 201
    assignment = assigned.json()["data"]
    assert assignment["status"] == "active"

    full = client.post(
        f"/api/v1/jobs/{job_b['job_id']}/assignments",
        json={"vendor_id": vendor["vendor_id"]},
        headers=HEADERS,
    )
    assert full.status_code == 409
    assert full.json()["error"]["code"] == "INVALID_OPERATION"
    assert full.json()["error"]["message"] == "Vendor is at full capacity"
    assert full.json()["error"]["class"] == "business_rule"

    revoked = client.delete(
        f"/api/v1/jobs/{job_a['job_id']}/assignments/{assignment['assignment_id']}",
        headers=HEADERS,
    )
    assert revoked.status_code == 200
    assert revoked.json()["data"]["status"] == "revoked"

    again = client.delete(
        f"/api/v1/jobs/{job_a['job_id']}/assignments/{assignment['assignment_id']}",
        headers=HEADERS,
    )
    assert again.status_code == 409

    vendor_now = client.get(f"/api/v1/vendors/{vendor['vendor_id']}", headers=HEADERS).json()["data"]
    assert vendor_now["current_capacity"] == 0
    history = client.get(f"/api/v1/jobs/{job_a['job_id']}/assignments", headers=HEADERS).json()["data"]
    assert [a["status"] for a in history] == ["revoked"]
    job_now = client.get(f"/api/v1/jobs/{job_a['job_id']}", headers=HEADERS).json()["data"]
    assert job_now["status"] == "in_review"
    assert job_now["assigned_vendor_name"] is None


def test_status_update_validates_value(client):
    job = _create_job(client)

    bad = client.patch(f"/api/v1/jobs/{job['job_id']}/status", json={"status": "done"}, headers=HEADERS)
    assert bad.status_code == 400

    ok = client.patch(f"/api/v1/jobs/{job['job_id']}/status", json={"status": "cancelled"}, headers=HEADERS)
    assert ok.status_code == 200
    assert ok.json()["data"]["status"] == "cancelled"
    assert ok.json()["data"]["cancelled_at"]


def test_request_recommendation_is_accepted_and_listed(client):
    job = _create_job(client)

    resp = client.post(f"/api/v1/jobs/{job['job_id']}/recommendations", headers=HEADERS)
    assert resp.status_code == 202
    recommendation = resp.json()["data"]
    assert recommendation["status"] == "pending"
    assert recommendation["requested_by"] == "dispatcher_1"

    listed = client.get(f"/api/v1/jobs/{job['job_id']}/recommendations", headers=HEADERS).json()["data"]
    assert [r["recommendation_id"] for r in listed] == [recommendation["recommendation_id"]]


def test_realtime_group_requires_matching_tenant(client):
    job = _create_job(client)

    own = client.get("/api/v1/realtime/tenant:tenant_a", headers=HEADERS)
    assert own.status_code == 200
    assert own.json()["data"] == []

    other = client.get("/api/v1/realtime/tenant:tenant_b", headers=HEADERS)
    assert other.status_code == 403

    job_events = client.get(f"/api/v1/realtime/job:{job['job_id']}", headers=HEADERS)
    assert job_events.status_code == 200

    foreign_job = client.get(f"/api/v1/realtime/job:{job['job_id']}", headers={"x-tenant-id": "tenant_b"})
    assert foreign_job.status_code == 404

    bad = client.get("/api/v1/realtime/everyone", headers=HEADERS)
    assert bad.status_code == 400
