import re
from datetime import datetime

from bson import ObjectId

from tests.conftest import create_order

APPLICATION = {
    "name": "Riya Sen",
    "email": "Riya@College.edu",
    "phone": "9812345670",
    "college": "NIT Calicut",
    "city": "Kozhikode",
    "state": "KL",
    "graduationYear": "2027",
}


def apply(client, **overrides):
    body = dict(APPLICATION)
    body.update(overrides)
    return client.post("/api/ambassadors", json=body)


def approve(client, admin_headers, waitlist_id):
    return client.post(
        f"/api/admin/ambassadors/waitlist/{waitlist_id}/approve", headers=admin_headers
    )


def approved_ambassador(client, admin_headers):
    waitlist_id = apply(client).get_json()["waitlistId"]
    return approve(client, admin_headers, waitlist_id).get_json()["ambassador"]


def test_application_is_queued(client, database):
    response = apply(client)
    assert response.status_code == 201
    assert response.get_json()["status"] == "pending"

    entry = database.ambassador_waitlist.find_one({})
    assert entry["email"] == "riya@college.edu"
    assert entry["graduation_year"] == "2027"


def test_application_validation(client):
    assert apply(client, name="").status_code == 400
    assert apply(client, email="not-an-email").status_code == 400
    assert apply(client, phone="abc").status_code == 400


def test_duplicate_application_reports_status(client):
    apply(client)
    response = apply(client, phone="9812345671")
    assert response.status_code == 409
    assert response.get_json()["status"] == "pending"
    assert "email" in response.get_json()["message"]


def test_existing_ambassador_blocks_application(client, admin_headers):
    approved_ambassador(client, admin_headers)
    response = apply(client, email="other@college.edu")
    assert response.status_code == 409
    assert response.get_json()["ambassadorId"]


def test_waitlist_listing_filters_by_status(client, admin_headers):
    apply(client)
    apply(client, email="second@college.edu", phone="9812345671", name="Second")

    response = client.get("/api/admin/ambassadors/waitlist", headers=admin_headers)
    payload = response.get_json()
    assert response.status_code == 200
    assert payload["pagination"]["total"] == 2
    assert {item["name"] for item in payload["items"]} == {"Riya Sen", "Second"}

    response = client.get("/api/admin/ambassadors/waitlist?search=second", headers=admin_headers)
    assert [item["name"] for item in response.get_json()["items"]] == ["Second"]

    response = client.get("/api/admin/ambassadors/waitlist?status=approved", headers=admin_headers)
    assert response.get_json()["items"] == []


def test_waitlist_requires_admin(client, student_headers):
    response = client.get("/api/admin/ambassadors/waitlist", headers=student_headers)
    assert response.status_code == 403


def test_approval_creates_ambassador(client, admin_headers, database):
    waitlist_id = apply(client).get_json()["waitlistId"]
    response = approve(client, admin_headers, waitlist_id)
    payload = response.get_json()

    assert response.status_code == 200
    assert payload["message"] == "Waitlist entry approved and ambassador created"
    assert re.fullmatch(r"SD-CA-\d{5}", payload["ambassador"]["referralCode"])
    assert payload["ambassador"]["referralLink"].endswith(f"/ref/{payload['ambassador']['referralCode']}")
    assert payload["emailSent"] is False

    entry = database.ambassador_waitlist.find_one({"_id": ObjectId(waitlist_id)})
    assert entry["status"] == "approved"
    assert str(entry["ambassador_id"]) == payload["ambassador"]["id"]

    again = approve(client, admin_headers, waitlist_id)
    assert again.status_code == 400
    assert again.get_json()["message"] == "Waitlist entry is already approved"


def test_approval_links_existing_ambassador(client, admin_headers, database):
    existing_id = database.ambassadors.insert_one(
        {
            "name": "Riya",
            "email": "legacy@college.edu",
            "phone": "9812345670",
            "referral_code": "SD-CA-11111",
            "created_at": datetime.utcnow(),
        }
    ).inserted_id
    waitlist_id = database.ambassador_waitlist.insert_one(
        {
            "name": "Riya Sen",
            "email": "riya@college.edu",
            "phone": "9812345670",
            "status": "pending",
            "created_at": datetime.utcnow(),
        }
    ).inserted_id

    payload = approve(client, admin_headers, str(waitlist_id)).get_json()
    assert payload["message"] == "Waitlist entry approved and linked to existing ambassador"
    assert payload["ambassador"]["id"] == str(existing_id)
    assert database.ambassadors.count_documents({}) == 1


def test_approval_sends_email_when_configured(app, client, admin_headers, monkeypatch):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return {"id": "email-1"}

    app.config["RESEND_API_KEY"] = "re_test"
    monkeypatch.setattr("backend.app.resend.Emails.send", fake_send)

    waitlist_id = apply(client).get_json()["waitlistId"]
    payload = approve(client, admin_headers, waitlist_id).get_json()

    assert payload["emailSent"] is True
    assert sent[0]["to"] == ["riya@college.edu"]
    assert payload["ambassador"]["referralCode"] in sent[0]["html"]


def test_rejection_records_reason(client, admin_headers, database):
    waitlist_id = apply(client).get_json()["waitlistId"]
    response = client.post(
        f"/api/admin/ambassadors/waitlist/{waitlist_id}/reject",
        json={"reason": "Incomplete details"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    entry = database.ambassador_waitlist.find_one({"_id": ObjectId(waitlist_id)})
    assert entry["status"] == "rejected"
    assert entry["rejection_reason"] == "Incomplete details"


def test_unknown_waitlist_entry(client, admin_headers):
    assert approve(client, admin_headers, "nope").status_code == 404
    assert approve(client, admin_headers, str(ObjectId())).status_code == 404


def test_get_ambassador_and_update_payout(client, admin_headers):
    ambassador = approved_ambassador(client, admin_headers)

    response = client.get(f"/api/ambassadors/{ambassador['id']}")
    assert response.status_code == 200
    assert response.get_json()["ambassador"]["upiId"] is None

    bad = client.put(f"/api/ambassadors/{ambassador['id']}/payout", json={"type": "bank", "upiId": "riya@okaxis"})
    assert bad.status_code == 400

    response = client.put(
        f"/api/ambassadors/{ambassador['id']}/payout", json={"type": "upi", "upiId": "riya@okaxis"}
    )
    assert response.status_code == 200
    assert response.get_json()["ambassador"]["upiId"] == "riya@okaxis"

    assert client.get(f"/api/ambassadors/{ObjectId()}").status_code == 404


def test_referral_sets_cookie_and_records_click(client, admin_headers, database):
    ambassador = approved_ambassador(client, admin_headers)
    code = ambassador["referralCode"]

    response = client.get(f"/api/referrals/{code.lower()}", headers={"User-Agent": "pytest"})
    assert response.status_code == 200
    assert response.get_json()["referralCode"] == code
    cookie_header = response.headers.get("Set-Cookie")
    assert f"sd_ref={code}" in cookie_header
    assert "Max-Age=604800" in cookie_header

    click = database.referral_clicks.find_one({})
    assert click["referral_code"] == code
    assert len(click["ua_hash"]) == 16
    assert click["ua_hash"] != "pytest"

    assert client.get("/api/referrals/SD-CA-00000").status_code == 404


def test_summary_and_rewards(client, admin_headers):
    ambassador = approved_ambassador(client, admin_headers)
    order = create_order(client, count=5, referralCode=ambassador["referralCode"])
    client.post(f"/api/admin/orders/{order['id']}/mark-paid", headers=admin_headers)

    summary = client.get(f"/api/ambassadors/{ambassador['id']}/summary").get_json()
    assert summary["stats"]["referredOrders"] == 1
    assert summary["stats"]["totalMembers"] == 5
    assert summary["stats"]["completedOrders"] == 1
    assert summary["stats"]["pendingRewards"] == 100
    assert summary["stats"]["paidRewards"] == 0
    assert len(summary["pendingPayouts"]) == 1

    rewards = client.get(f"/api/ambassadors/{ambassador['id']}/rewards?limit=5").get_json()
    assert rewards["pagination"]["total"] == 1
    assert rewards["pagination"]["limit"] == 5
    assert rewards["items"][0]["rewardAmount"] == 100
    assert rewards["items"][0]["memberCount"] == 5
