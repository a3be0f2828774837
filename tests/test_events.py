from __future__ import annotations


def _create(client, headers, **fields):
    payload = {"title": "Diwali", "eventType": "holiday", "date": "2025-10-20", **fields}
    return client.post("/api/events", json=payload, headers=headers)


def test_create_event(client, owner, family, add_member):
    _, headers = owner
    ram = add_member("Ram")
    resp = _create(client, headers, participants=[ram["id"], "0" * 32], tags="lights, sweets")
    assert resp.status_code == 201
    event = resp.get_json()["event"]
    assert event["familyId"] == family["id"]
    assert event["participants"] == [ram["id"]]
    assert event["tags"] == ["lights", "sweets"]
    assert event["significance"] == "medium"
    assert event["createdBy"]["email"] == "owner@gmail.com"


def test_participant_names_from_string(client, owner, family):
    _, headers = owner
    event = _create(client, headers, participants="Ram, Sita").get_json()["event"]
    assert event["participantNames"] == ["Ram", "Sita"]
    assert event["participants"] == []


def test_create_event_validation(client, owner, family):
    _, headers = owner
    resp = client.post("/api/events", json={"title": "No date", "eventType": "other"}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Title, event type, and date are required"

    assert _create(client, headers, eventType="party").status_code == 400
    assert _create(client, headers, isRecurring=True).status_code == 400
    assert _create(client, headers, isRecurring=True, recurrencePattern="yearly").status_code == 201


def test_events_need_a_family(client, make_user, headers_for):
    headers = headers_for(make_user("solo@gmail.com"))
    assert _create(client, headers).status_code == 404
    assert client.get("/api/events", headers=headers).status_code == 404


def test_only_admins_create(client, owner, family, make_user, headers_for):
    _, owner_headers = owner
    client.put(f"/api/families/{family['id']}", json={"requireApprovalForJoining": False}, headers=owner_headers)
    headers = headers_for(make_user("cousin@gmail.com"))
    client.post(f"/api/families/{family['id']}/join", headers=headers)

    resp = _create(client, headers)
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Only family admins can create events"


def test_list_newest_first(client, owner, family):
    _, headers = owner
    _create(client, headers, title="Old", date="2001-01-01")
    _create(client, headers, title="New", date="2024-01-01")

    mine = client.get("/api/events", headers=headers).get_json()["events"]
    assert [e["title"] for e in mine] == ["New", "Old"]
    by_family = client.get(f"/api/events/family/{family['familyId']}", headers=headers).get_json()["events"]
    assert [e["title"] for e in by_family] == ["New", "Old"]


def test_other_family_cannot_list(client, family, make_user, headers_for):
    headers = headers_for(make_user("peek@gmail.com"))
    resp = client.get(f"/api/events/family/{family['id']}", headers=headers)
    assert resp.status_code == 403


def test_update_and_delete(client, owner, family, make_user, headers_for):
    _, headers = owner
    event = _create(client, headers, isRecurring=True, recurrencePattern="yearly").get_json()["event"]
    url = f"/api/events/{event['id']}"

    resp = client.put(url, json={"title": "Deepavali", "isRecurring": False}, headers=headers)
    assert resp.status_code == 200
    body = resp.get_json()["event"]
    assert body["title"] == "Deepavali"
    assert body["isRecurring"] is False
    assert body["recurrencePattern"] is None
    assert body["updatedBy"]

    assert client.put(url, json={"date": ""}, headers=headers).status_code == 400

    stranger = headers_for(make_user("stranger@gmail.com"))
    resp = client.put(url, json={"title": "Mine"}, headers=stranger)
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You can only edit your own events or family admin can edit any event"
    assert client.delete(url, headers=stranger).status_code == 403

    assert client.delete(url, headers=headers).status_code == 200
    assert client.delete(url, headers=headers).status_code == 404
