from __future__ import annotations


def test_create_member(client, owner, family, add_member):
    _, headers = owner
    ram = add_member("Ram", dateOfBirth="1950-05-01", gender="male", occupation="Teacher", tags="elder, priest")
    assert ram["fullName"] == "Ram Sharma"
    assert ram["gender"] == "male"
    assert ram["isRootMember"] is True
    assert ram["profession"]["currentJob"]["title"] == "Teacher"
    assert ram["tags"] == ["elder", "priest"]
    assert ram["age"] >= 70

    sita = add_member("Sita")
    assert sita["gender"] == "other"
    assert sita["isRootMember"] is False

    stats = client.get(f"/api/families/{family['id']}", headers=headers).get_json()["family"]["stats"]
    assert stats["totalMembers"] == 2
    assert stats["totalMales"] == 1
    assert stats["oldestMember"]["memberId"] == ram["id"]


def test_create_member_requires_names(client, owner, family):
    _, headers = owner
    resp = client.post("/api/members", json={"firstName": "Solo"}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "First name and last name are required"


def test_create_member_without_family(client, make_user, headers_for):
    headers = headers_for(make_user("lonely@gmail.com"))
    resp = client.post("/api/members", json={"firstName": "A", "lastName": "B"}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "You must be part of a family to add members"


def test_create_member_date_rules(client, owner, family):
    _, headers = owner
    future = client.post(
        "/api/members", json={"firstName": "A", "lastName": "B", "dateOfBirth": "2999-01-01"}, headers=headers
    )
    assert future.status_code == 400

    backwards = client.post(
        "/api/members",
        json={"firstName": "A", "lastName": "B", "dateOfBirth": "1990-01-01", "dateOfDeath": "1980-01-01"},
        headers=headers,
    )
    assert backwards.status_code == 400

    bad_gender = client.post("/api/members", json={"firstName": "A", "lastName": "B", "gender": "x"}, headers=headers)
    assert bad_gender.status_code == 400


def test_other_family_cannot_add(client, family, make_user, headers_for):
    other = make_user("verma@gmail.com")
    headers = headers_for(other)
    client.post("/api/families", json={"familyName": "Verma"}, headers=headers)

    resp = client.post(
        "/api/members", json={"firstName": "X", "lastName": "Y", "familyId": family["id"]}, headers=headers
    )
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You can only add members to your own family"


def test_plain_member_cannot_add(client, owner, family, make_user, headers_for):
    _, owner_headers = owner
    client.put(f"/api/families/{family['id']}", json={"requireApprovalForJoining": False}, headers=owner_headers)
    headers = headers_for(make_user("cousin@gmail.com"))
    client.post(f"/api/families/{family['id']}/join", headers=headers)

    resp = client.post("/api/members", json={"firstName": "X", "lastName": "Y"}, headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Only family admins can add members"


def test_create_with_relationship(client, owner, add_member):
    _, headers = owner
    dad = add_member("Ram", gender="male")
    kid = add_member("Luv", gender="male", relationshipType="child_of", relatedToMemberId=dad["id"])
    assert kid["parents"]["father"]["id"] == dad["id"]

    mom = add_member("Sita", gender="female", relationshipType="mother_of", relatedToMemberId=kid["id"])
    resp = client.get(f"/api/members/{kid['id']}", headers=headers).get_json()["member"]
    assert resp["parents"]["mother"]["id"] == mom["id"]

    add_member("Urmila", relationshipType="spouse_of", relatedToMemberId=dad["id"])
    resp = client.get(f"/api/members/{dad['id']}", headers=headers).get_json()["member"]
    assert [s["member"]["firstName"] for s in resp["spouses"]] == ["Urmila"]
    assert [c["firstName"] for c in resp["children"]] == ["Luv"]


def test_create_with_unknown_relative(client, owner, family):
    _, headers = owner
    resp = client.post(
        "/api/members",
        json={"firstName": "A", "lastName": "B", "relationshipType": "child_of", "relatedToMemberId": "f" * 32},
        headers=headers,
    )
    assert resp.status_code == 404
    listing = client.get("/api/members", headers=headers).get_json()["members"]
    assert listing == []


def test_list_and_search(client, owner, add_member):
    _, headers = owner
    ram = add_member("Ram", "Sharma")
    add_member("Shyam", "Verma", nickname="Ramu")
    add_member("Gita", "Sharma")

    def names(q):
        rows = client.get(f"/api/members?q={q}", headers=headers).get_json()["members"]
        return sorted(m["firstName"] for m in rows)

    assert names("") == ["Gita", "Ram", "Shyam"]
    assert names("ram") == ["Ram", "Shyam"]
    assert names("ram sharma") == ["Ram"]
    assert names("100%25") == []
    assert names(ram["id"]) == ["Ram"]

    only = client.get(f"/api/members?memberId={ram['id']}", headers=headers).get_json()["members"]
    assert [m["id"] for m in only] == [ram["id"]]
    assert only[0]["relationships"] == {"father": None, "mother": None, "children": [], "spouse": []}


def test_get_member_access(client, owner, add_member, make_user, headers_for):
    _, headers = owner
    ram = add_member("Ram")
    assert client.get(f"/api/members/{ram['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/members/{'0' * 32}", headers=headers).status_code == 404

    stranger = headers_for(make_user("stranger@gmail.com"))
    resp = client.get(f"/api/members/{ram['id']}", headers=stranger)
    assert resp.status_code == 403


def test_update_member(client, owner, add_member, make_user, headers_for):
    _, headers = owner
    ram = add_member("Ram", phone="999")
    resp = client.put(
        f"/api/members/{ram['id']}", json={"nickname": "Ramu", "dateOfDeath": "2020-01-01", "email": "R@X.com"},
        headers=headers,
    )
    assert resp.status_code == 200
    body = resp.get_json()["member"]
    assert body["nickname"] == "Ramu"
    assert body["isAlive"] is False
    assert body["contact"]["emails"][0]["email"] == "r@x.com"
    assert body["contact"]["phoneNumbers"][0]["number"] == "999"

    assert client.put(f"/api/members/{ram['id']}", json={"firstName": ""}, headers=headers).status_code == 400
    stranger = headers_for(make_user("edit@gmail.com"))
    assert client.put(f"/api/members/{ram['id']}", json={"nickname": "x"}, headers=stranger).status_code == 403


def test_delete_member_drops_edges(client, owner, add_member, connect):
    _, headers = owner
    dad = add_member("Ram", gender="male")
    kid = add_member("Luv")
    assert connect(dad["id"], kid["id"], "parent").status_code == 200

    assert client.delete(f"/api/members/{dad['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/members/{dad['id']}", headers=headers).status_code == 404
    kid_now = client.get(f"/api/members/{kid['id']}", headers=headers).get_json()["member"]
    assert kid_now["parents"]["father"] is None


def test_member_photos_keep_one_primary(client, owner, add_member):
    _, headers = owner
    ram = add_member("Ram")
    url = f"/api/members/{ram['id']}/photos"

    first = client.post(url, json={"url": "http://img/1.jpg"}, headers=headers).get_json()["photo"]
    assert first["isPrimary"] is True
    client.post(url, json={"url": "http://img/2.jpg"}, headers=headers)
    client.post(url, json={"url": "http://img/3.jpg", "isPrimary": True}, headers=headers)
    assert client.post(url, json={}, headers=headers).status_code == 400

    photos = client.get(f"/api/members/{ram['id']}", headers=headers).get_json()["member"]["photos"]
    assert [p["url"] for p in photos if p["isPrimary"]] == ["http://img/3.jpg"]


def test_timeline_sorted_by_date(client, owner, add_member):
    _, headers = owner
    ram = add_member("Ram")
    url = f"/api/members/{ram['id']}/timeline"

    assert client.post(url, json={"title": "No date"}, headers=headers).status_code == 400
    client.post(url, json={"title": "Married", "date": "1975-02-01", "category": "marriage"}, headers=headers)
    resp = client.post(url, json={"title": "Graduated", "date": "1970-06-01", "category": "nonsense"}, headers=headers)
    assert resp.get_json()["event"]["category"] == "other"
    assert [e["title"] for e in resp.get_json()["timeline"]] == ["Graduated", "Married"]


def test_timeline_checks_admin_before_payload(client, owner, family, add_member, make_user, headers_for):
    _, owner_headers = owner
    ram = add_member("Ram")
    client.put(f"/api/families/{family['id']}", json={"requireApprovalForJoining": False}, headers=owner_headers)
    headers = headers_for(make_user("cousin@gmail.com"))
    client.post(f"/api/families/{family['id']}/join", headers=headers)

    resp = client.post(f"/api/members/{ram['id']}/timeline", json={}, headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You must be a family admin to add timeline events"


def test_set_position(client, owner, add_member):
    _, headers = owner
    ram = add_member("Ram")
    url = f"/api/members/{ram['id']}/position"
    assert client.put(url, json={"x": 10, "y": 20.5}, headers=headers).status_code == 200
    assert client.put(url, json={"x": "10", "y": 20}, headers=headers).status_code == 400
    assert client.put(url, json={"x": True, "y": 20}, headers=headers).status_code == 400

    listing = client.get("/api/members", headers=headers).get_json()["members"]
    assert listing[0]["position"] == {"x": 10.0, "y": 20.5}
