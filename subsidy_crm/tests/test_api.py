"""
API endpoint tests for all routes.
Uses in-memory SQLite + dependency-overridden FastAPI test client.
"""
from sqlalchemy import select

from subsidy_crm.models.audit_log import AuditLog
from subsidy_crm.models.notification import Notification

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


async def create_client(client, **data):
    payload = {"company_name": "Acme Foods", "contact_person": "Ravi", "mobile_number": "9876543210",
               "email": "ravi@acme.test"}
    payload.update(data)
    r = await client.post("/api/clients", json=payload)
    assert r.status_code == 201, r.text
    return r.json()


async def create_lead(client, **data):
    payload = {"company_name": "Bright Textiles", "contact_person": "Meera", "mobile_number": "9123456780"}
    payload.update(data)
    r = await client.post("/api/leads", json=payload)
    assert r.status_code == 201, r.text
    return r.json()


def task_path(project, milestone_index=0, task_index=0):
    milestone = project["milestones"][milestone_index]
    task = milestone["tasks"][task_index]
    return f"/api/projects/{project['id']}/milestones/{milestone['id']}/tasks/{task['id']}"


async def upload_pdf(client, path, content=PDF_BYTES, content_type="application/pdf"):
    return await client.post(f"{path}/attachments", files={"file": ("kyc docs.pdf", content, content_type)})


# ===================== HEALTH / ROOT =====================


async def test_root(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "running"


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


# ===================== AUTH =====================


async def test_login_success(unauth_client, seed_data):
    r = await unauth_client.post(
        "/api/auth/login",
        data={"username": "Admin@Test.com", "password": "adminpass123"},
    )
    assert r.status_code == 200
    body = r.json()
    assert "access_token" in body
    assert body["user"]["role"] == "ADMIN"


async def test_login_wrong_password(unauth_client, seed_data):
    r = await unauth_client.post(
        "/api/auth/login",
        data={"username": "admin@test.com", "password": "wrong"},
    )
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid email or password"


async def test_login_disabled_user(unauth_client, seed_data, db_session):
    seed_data["user"].is_active = False
    await db_session.commit()
    r = await unauth_client.post(
        "/api/auth/login",
        data={"username": "consultant@test.com", "password": "userpass123"},
    )
    assert r.status_code == 403


async def test_get_me(client):
    r = await client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json()["email"] == "admin@test.com"


async def test_protected_route_no_token(unauth_client, seed_data):
    r = await unauth_client.get("/api/auth/me")
    assert r.status_code == 401


async def test_change_password(user_client, unauth_client):
    r = await user_client.post("/api/auth/change-password", json={
        "current_password": "nope", "new_password": "newpass1234", "confirm_password": "newpass1234",
    })
    assert r.status_code == 400

    r = await user_client.post("/api/auth/change-password", json={
        "current_password": "userpass123", "new_password": "newpass1234", "confirm_password": "newpass1234",
    })
    assert r.status_code == 200

    r = await unauth_client.post(
        "/api/auth/login", data={"username": "consultant@test.com", "password": "newpass1234"},
    )
    assert r.status_code == 200


# ===================== USERS =====================


async def test_admin_creates_user(client):
    r = await client.post("/api/users", json={
        "name": "New Consultant", "email": "New@Test.com", "password": "password123",
        "module_access": ["leads", "bogus"],
    })
    assert r.status_code == 201
    body = r.json()
    assert body["email"] == "new@test.com"
    assert body["role"] == "USER"
    assert body["module_access"] == ["DASHBOARD", "LEADS"]

    r = await client.post("/api/users", json={"name": "Dup", "email": "new@test.com", "password": "password123"})
    assert r.status_code == 409


async def test_non_admin_cannot_manage_users(user_client):
    r = await user_client.get("/api/users")
    assert r.status_code == 403

    r = await user_client.get("/api/users/assignable")
    assert r.status_code == 200
    assert [u["name"] for u in r.json()] == ["Admin User", "Consultant"]


async def test_last_admin_cannot_be_demoted(client, seed_data):
    admin_id = seed_data["admin"].id
    r = await client.patch(f"/api/users/{admin_id}", json={"role": "USER"})
    assert r.status_code == 400
    assert r.json()["detail"] == "At least one active admin user must remain in the system"

    r = await client.patch(f"/api/users/{admin_id}", json={"is_active": False})
    assert r.status_code == 400
    assert r.json()["detail"] == "You cannot disable your own account"


async def test_promote_then_demote(client, seed_data):
    user_id = seed_data["user"].id
    r = await client.patch(f"/api/users/{user_id}", json={"role": "ADMIN"})
    assert r.status_code == 200
    assert r.json()["role"] == "ADMIN"

    r = await client.patch(f"/api/users/{seed_data['admin'].id}", json={"role": "USER"})
    assert r.status_code == 200


# ===================== LEADS =====================


async def test_create_and_list_leads(client):
    await create_lead(client)
    await create_lead(client, company_name="Second Co", source="REFERRAL")

    r = await client.get("/api/leads", params={"limit": 1})
    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 2
    assert len(body["leads"]) == 1
    assert body["leads"][0]["temperature"] == "HOT"

    r = await client.get("/api/leads", params={"source": "REFERRAL"})
    assert [lead["company_name"] for lead in r.json()["leads"]] == ["Second Co"]

    r = await client.get("/api/leads", params={"bucket": "COLD"})
    assert r.json()["total"] == 0


async def test_create_lead_validation(client):
    r = await client.post("/api/leads", json={"company_name": "Only name"})
    assert r.status_code == 400


async def test_lead_codes_are_sequential(client):
    first = await create_lead(client)
    second = await create_lead(client)
    assert first["lead_code"] == "LEAD-0001"
    assert second["lead_code"] == "LEAD-0002"


async def test_lead_status_update_captures_first_response(client):
    lead = await create_lead(client)
    r = await client.patch(f"/api/leads/{lead['id']}", json={"status": "CONTACTED"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "CONTACTED"
    assert body["first_response_at"] is not None
    assert body["update_count"] == 1


async def test_lead_notes_and_calls(client):
    lead = await create_lead(client)
    r = await client.post(f"/api/leads/{lead['id']}/notes", json={"note": "Asked for GST copy"})
    assert r.status_code == 201
    assert r.json()["notes_count"] == 1

    r = await client.post(f"/api/leads/{lead['id']}/calls", json={
        "call_at": "2024-05-10T10:00:00", "duration_minutes": 12, "summary": "Intro",
    })
    assert r.status_code == 201
    body = r.json()
    assert body["calls_count"] == 1
    assert body["total_call_duration_minutes"] == 12


async def test_lead_module_gate(db_session, client, user_client, seed_data):
    seed_data["user"].module_access = ["DASHBOARD"]
    await db_session.commit()
    r = await user_client.get("/api/leads")
    assert r.status_code == 403


async def test_convert_lead(client):
    lead = await create_lead(client)
    r = await client.post(f"/api/leads/{lead['id']}/convert", json={"scheme_name": "PMEGP"})
    assert r.status_code == 200
    body = r.json()
    assert body["lead"]["status"] == "CONVERTED"
    assert body["lead"]["is_converted"] is True
    assert body["client"]["company_name"] == "Bright Textiles"
    assert body["client"]["client_code"] == "CL-0001"
    assert body["project"]["project_code"] == "PRJ-0001"
    assert body["project"]["scheme_name"] == "PMEGP"
    assert body["project"]["lead_id"] == lead["id"]
    assert len(body["project"]["milestones"]) == 4

    r = await client.post(f"/api/leads/{lead['id']}/convert")
    assert r.status_code == 200
    again = r.json()
    assert again["message"] == "Lead already converted"
    assert again["client"]["id"] == body["client"]["id"]
    assert again["project"] is None

    r = await client.get("/api/projects")
    assert len(r.json()) == 1


# ===================== WEBFORM =====================


async def test_webform_requires_configured_key(unauth_client, seed_data):
    r = await unauth_client.post("/api/leads/webform", json={"company_name": "Web Co"})
    assert r.status_code == 503


async def test_webform_flow(client, unauth_client):
    r = await client.patch("/api/settings", json={"webhook_key": "s3cret-key"})
    assert r.status_code == 200
    webhook = r.json()["webhook"]
    assert webhook["source"] == "DATABASE"
    assert webhook["is_active"] is True
    assert "s3cret-key" not in webhook["key_preview"]

    payload = {"company_name": "Web Co", "contact_person": "Anil", "mobile_number": "9000000000",
               "message": "Need subsidy guidance"}
    r = await unauth_client.post("/api/leads/webform", json=payload, headers={"X-Webhook-Key": "wrong"})
    assert r.status_code == 401
    r = await unauth_client.post("/api/leads/webform", json=payload)
    assert r.status_code == 401

    r = await unauth_client.post("/api/leads/webform", json=payload, headers={"X-Webhook-Key": "s3cret-key"})
    assert r.status_code == 201
    body = r.json()
    assert body["source"] == "WEBSITE"
    assert body["notes"][0]["note"] == "Website message: Need subsidy guidance"

    r = await client.get("/api/settings")
    assert r.json()["webhook"]["last_received_at"] is not None


async def test_webform_can_be_disabled(client, unauth_client):
    await client.patch("/api/settings", json={"webhook_key": "s3cret-key", "webhook_enabled": False})
    r = await unauth_client.post(
        "/api/leads/webform",
        json={"company_name": "Web Co", "contact_person": "Anil", "mobile_number": "9000000000"},
        headers={"X-Webhook-Key": "s3cret-key"},
    )
    assert r.status_code == 503


# ===================== CLIENTS =====================


async def test_create_client_with_project(client):
    body = await create_client(client, scheme_name="CMEGP")
    assert body["client"]["client_code"] == "CL-0001"
    assert body["project"]["scheme_name"] == "CMEGP"
    assert body["project"]["current_stage"] == "DOCUMENTATION"
    assert body["project"]["client_name"] == "Acme Foods"

    r = await client.get(f"/api/clients/{body['client']['id']}")
    assert r.status_code == 200
    assert [p["project_code"] for p in r.json()["projects"]] == ["PRJ-0001"]


async def test_create_client_without_project(client):
    body = await create_client(client, create_project=False)
    assert body["project"] is None


async def test_client_search(client):
    await create_client(client)
    await create_client(client, company_name="Zen Pharma", create_project=False)
    r = await client.get("/api/clients", params={"search": "zen"})
    assert [c["company_name"] for c in r.json()] == ["Zen Pharma"]


# ===================== PROJECTS =====================


async def test_project_stage_guidance(client):
    project = (await create_client(client))["project"]
    assert project["stage_guidance"].startswith("Collect and validate")
    assert project["activity_stats"]["task_count"] == 10
    assert project["milestones"][0]["tasks"][0]["requires_attachment"] is True


async def test_completion_requires_document(client, upload_dir):
    project = (await create_client(client))["project"]
    path = task_path(project)

    r = await client.post(f"{path}/complete")
    assert r.status_code == 400
    assert r.json()["detail"] == "Upload required documents before completing this task"

    r = await upload_pdf(client, path)
    assert r.status_code == 201
    task = r.json()["milestones"][0]["tasks"][0]
    assert task["status"] == "IN_PROGRESS"
    assert len(task["attachments"]) == 1
    assert list(upload_dir.iterdir())

    r = await client.post(f"{path}/complete")
    assert r.status_code == 200
    body = r.json()
    assert body["milestones"][0]["tasks"][0]["status"] == "COMPLETED"
    assert body["milestones"][0]["status"] == "IN_PROGRESS"
    assert body["activity_stats"]["completed_task_count"] == 1


async def test_documentation_milestone_advances_stage(client, upload_dir):
    project = (await create_client(client))["project"]
    for index in range(3):
        path = task_path(project, 0, index)
        assert (await upload_pdf(client, path)).status_code == 201
        r = await client.post(f"{path}/complete")
        assert r.status_code == 200

    body = r.json()
    assert body["milestones"][0]["status"] == "DONE"
    assert body["current_stage"] == "APPLICATION_FILED"
    assert body["stage_history"][-1]["from"] == "DOCUMENTATION"
    assert body["stage_history"][-1]["to"] == "APPLICATION_FILED"

    # Re-reading changes nothing
    r = await client.get(f"/api/projects/{project['id']}")
    assert r.json()["stage_history"] == body["stage_history"]


async def test_cleared_attachment_flag_keeps_document_gate(client, upload_dir):
    project = (await create_client(client))["project"]
    path = task_path(project)

    r = await client.patch(path, json={"requires_attachment": False})
    assert r.status_code == 200

    r = await client.post(f"{path}/complete")
    assert r.status_code == 400
    assert r.json()["detail"] == "Upload required documents before completing this task"


async def test_upload_rejects_non_pdf(client, upload_dir):
    project = (await create_client(client))["project"]
    path = task_path(project)

    r = await upload_pdf(client, path, content=b"hello", content_type="text/plain")
    assert r.status_code == 400
    assert r.json()["detail"] == "Only PDF files are allowed"

    r = await upload_pdf(client, path, content=b"not really a pdf")
    assert r.status_code == 400
    assert r.json()["detail"] == "Uploaded file is not a valid PDF"
    assert not list(upload_dir.iterdir())


async def test_download_attachment(client, upload_dir):
    project = (await create_client(client))["project"]
    path = task_path(project)
    task = (await upload_pdf(client, path)).json()["milestones"][0]["tasks"][0]
    attachment_id = task["attachments"][0]["id"]

    r = await client.get(f"{path}/attachments/{attachment_id}/download")
    assert r.status_code == 200
    assert r.content == PDF_BYTES
    assert r.headers["content-disposition"].startswith("inline")


async def test_non_assignee_cannot_comment(client, user_client, seed_data):
    project = (await create_client(client))["project"]
    path = task_path(project, 2, 0)

    r = await user_client.post(f"{path}/comments", json={"text": "Can I help?"})
    assert r.status_code == 403

    r = await client.patch(path, json={"assignee_id": seed_data["user"].id})
    assert r.status_code == 200

    r = await user_client.post(f"{path}/comments", json={"text": "Working on it"})
    assert r.status_code == 201
    task = r.json()["milestones"][2]["tasks"][0]
    assert task["status"] == "IN_PROGRESS"
    assert task["comments"][0]["text"] == "Working on it"


async def test_user_sees_only_assigned_projects(client, user_client, seed_data):
    first = (await create_client(client))["project"]
    second = (await create_client(client, company_name="Other Co"))["project"]
    await client.patch(task_path(second, 2, 0), json={"assignee_id": seed_data["user"].id})

    r = await user_client.get("/api/projects")
    assert [p["id"] for p in r.json()] == [second["id"]]

    r = await user_client.get(f"/api/projects/{first['id']}")
    assert r.status_code == 403


async def test_task_status_is_automated(client):
    project = (await create_client(client))["project"]
    path = task_path(project)

    r = await client.patch(path, json={"status": "COMPLETED"})
    assert r.status_code == 400

    r = await client.patch(path, json={"status": "SKIPPED"})
    assert r.status_code == 200
    assert r.json()["milestones"][0]["tasks"][0]["status"] == "SKIPPED"

    r = await client.post(f"{path}/complete")
    assert r.status_code == 400


async def test_add_milestone_and_task(client, seed_data):
    project = (await create_client(client))["project"]
    r = await client.post(f"/api/projects/{project['id']}/milestones", json={
        "name": "Clarification round", "stage": "CLARIFICATIONS",
    })
    assert r.status_code == 201
    milestone = r.json()["milestones"][-1]
    assert milestone["stage"] == "CLARIFICATIONS"
    assert milestone["status"] == "PENDING"

    r = await client.post(f"/api/projects/{project['id']}/milestones/{milestone['id']}/tasks", json={
        "name": "Submit clarifications", "assignee_id": seed_data["user"].id,
    })
    assert r.status_code == 201
    task = r.json()["milestones"][-1]["tasks"][0]
    assert task["description"].startswith("Prepare clarification response")

    r = await client.post(f"/api/projects/{project['id']}/milestones/{milestone['id']}/tasks", json={
        "name": "Ghost task", "assignee_id": 9999,
    })
    assert r.status_code == 400


async def test_manual_stage_change(client):
    project = (await create_client(client))["project"]
    r = await client.patch(f"/api/projects/{project['id']}", json={"current_stage": "ON_HOLD"})
    assert r.status_code == 200
    assert r.json()["current_stage"] == "ON_HOLD"

    r = await client.patch(f"/api/projects/{project['id']}", json={"current_stage": "SIDEWAYS"})
    assert r.status_code == 400


async def test_non_admin_cannot_create_project(client, user_client):
    body = await create_client(client, create_project=False)
    r = await user_client.post("/api/projects", json={"client_id": body["client"]["id"]})
    assert r.status_code == 403

    r = await client.post("/api/projects", json={"client_id": body["client"]["id"], "scheme_name": "PLI"})
    assert r.status_code == 201
    assert r.json()["project_code"] == "PRJ-0001"


# ===================== INVOICES =====================


async def create_invoice(client, **data):
    client_id = (await create_client(client))["client"]["id"]
    payload = {
        "client_id": client_id,
        "tax_percent": 18,
        "discount_amount": 500,
        "line_items": [{"description": "Subsidy consulting", "quantity": 1, "unit_price": 10000}],
    }
    payload.update(data)
    r = await client.post("/api/invoices", json=payload)
    assert r.status_code == 201, r.text
    return r.json()


async def test_create_invoice(client):
    invoice = await create_invoice(client)
    assert invoice["invoice_no"] == "INV-0001"
    assert invoice["status"] == "ISSUED"
    assert invoice["total_amount"] == 11300
    assert invoice["balance_amount"] == 11300
    assert invoice["currency"] == "INR"
    assert invoice["bill_to_name"] == "Acme Foods"


async def test_create_invoice_requires_line_items(client):
    client_id = (await create_client(client))["client"]["id"]
    r = await client.post("/api/invoices", json={"client_id": client_id, "line_items": []})
    assert r.status_code == 400
    assert r.json()["detail"] == "At least one line item is required"

    # A rejected invoice must not consume a number
    invoice = await create_invoice(client)
    assert invoice["invoice_no"] == "INV-0001"


async def test_invoice_project_must_match_client(client):
    other = await create_client(client, company_name="Other Co")
    r = await client.post("/api/invoices", json={
        "client_id": (await create_client(client))["client"]["id"],
        "project_id": other["project"]["id"],
        "line_items": [{"description": "Fee", "quantity": 1, "unit_price": 100}],
    })
    assert r.status_code == 400
    assert r.json()["detail"] == "Selected project does not belong to selected client"


async def test_partial_payment(client):
    invoice = await create_invoice(client)
    r = await client.post(f"/api/invoices/{invoice['id']}/payments", json={"amount": 3000, "method": "UPI"})
    assert r.status_code == 201
    body = r.json()
    assert body["paid_amount"] == 3000
    assert body["balance_amount"] == 8300
    assert body["status"] == "PARTIALLY_PAID"
    assert body["payments"][0]["method"] == "UPI"


async def test_status_update_to_paid(client):
    invoice = await create_invoice(client)
    r = await client.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "PAID"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "PAID"
    assert body["balance_amount"] == 0
    assert body["payments"][0]["amount"] == 11300


async def test_status_update_to_partially_paid(client):
    invoice = await create_invoice(client)
    r = await client.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "PARTIALLY_PAID", "amount": 3000})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "PARTIALLY_PAID"
    assert body["paid_amount"] == 3000
    assert body["balance_amount"] == 8300
    assert len(body["payments"]) == 1


async def test_non_finite_amounts_rejected(client):
    invoice = await create_invoice(client)
    path = f"/api/invoices/{invoice['id']}"
    headers = {"Content-Type": "application/json"}

    r = await client.post(f"{path}/payments", content=b'{"amount": Infinity}', headers=headers)
    assert r.status_code == 422
    r = await client.patch(f"{path}/status", content=b'{"status": "PARTIALLY_PAID", "amount": NaN}', headers=headers)
    assert r.status_code == 422

    r = await client.get(path)
    body = r.json()
    assert body["status"] == "ISSUED"
    assert body["paid_amount"] == 0
    assert body["balance_amount"] == 11300
    assert body["payments"] == []


async def test_cancelled_invoice_rejects_payment(client):
    invoice = await create_invoice(client)
    await client.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "CANCELLED"})
    r = await client.post(f"/api/invoices/{invoice['id']}/payments", json={"amount": 100})
    assert r.status_code == 400


async def test_invoice_list_pagination(client):
    await create_invoice(client)
    r = await client.get("/api/invoices", params={"limit": 10})
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "total_pages": 1}
    assert body["invoices"][0]["client_code"] == "CL-0001"


async def test_invoices_need_module(user_client):
    r = await user_client.get("/api/invoices")
    assert r.status_code == 403


# ===================== SETTINGS / NOTIFICATIONS / AUDIT =====================


async def test_live_activity_setting(client, user_client):
    r = await user_client.get("/api/settings/me")
    assert r.json() == {"users_live_activity_enabled": False, "can_view_live_activity": False}

    r = await user_client.patch("/api/settings", json={"users_live_activity_enabled": True})
    assert r.status_code == 403

    r = await client.patch("/api/settings", json={"users_live_activity_enabled": True})
    assert r.status_code == 200
    assert r.json()["users_live_activity_enabled"] is True

    r = await user_client.get("/api/settings/me")
    assert r.json()["can_view_live_activity"] is True


async def test_mutations_are_audited_and_broadcast(client, user_client, db_session):
    await create_lead(client)

    result = await db_session.execute(select(AuditLog.action))
    assert "LEAD_CREATED" in result.scalars().all()
    result = await db_session.execute(select(Notification.type))
    assert "LEAD_CREATED" in result.scalars().all()

    r = await user_client.get("/api/notifications")
    assert r.status_code == 200
    notifications = r.json()
    assert notifications[0]["type"] == "LEAD_CREATED"
    assert notifications[0]["is_read"] is False

    r = await user_client.patch(f"/api/notifications/{notifications[0]['id']}/read")
    assert r.json() == {"ok": True}
    r = await user_client.get("/api/notifications")
    assert r.json()[0]["is_read"] is True


# ===================== DASHBOARD =====================


async def test_dashboard_summary(client):
    lead = await create_lead(client)
    await create_lead(client)
    await client.post(f"/api/leads/{lead['id']}/convert")

    r = await client.get("/api/dashboard/summary")
    assert r.status_code == 200
    body = r.json()
    assert body["total_leads"] == 2
    assert body["converted_leads"] == 1
    assert body["conversion_rate"] == 50
    assert body["total_projects"] == 1
    assert body["stage_distribution"] == {"DOCUMENTATION": 1}
    assert body["task_completion_rate"] == 0
