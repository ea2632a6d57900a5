from datetime import timedelta

from conftest import auth_headers, session_payload
from peer_tutoring.utilities import generate_uuid, utcnow


def api_payload(**overrides) -> dict:
    payload = session_payload(**overrides)
    schedule = dict(payload["schedule"])
    schedule["date"] = schedule["date"].isoformat()
    payload["schedule"] = schedule
    return payload


def create_session(client, user, **overrides) -> dict:
    response = client.post("/sessions/", json=api_payload(**overrides), headers=auth_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


##############
### CREATE ###
##############

def test_create_session(client, users, calendar_adapter):
    body = create_session(client, users["tutor"])

    assert body["tutor_id"] == users["tutor"].id
    assert body["tutor"]["name"] == "Tina"
    assert body["subject"] == "mathematics"
    assert body["schedule"]["duration"] == 90
    assert body["capacity"] == {"max_participants": 3, "current_enrolled": 0, "available_seats": 3, "is_full": False}
    assert body["location"]["meeting_link"] == "https://meet.example.com/abc"
    assert body["status"] == "scheduled"
    assert body["tags"] == ["algebra", "exam prep"]
    assert body["participants"] == []

    # Calendar sync ran in the background after the response
    assert calendar_adapter.names() == ["create"]
    stored = client.get(f"/sessions/{body['id']}").json()
    assert stored["external_calendar_ref"] == "evt-1"


def test_create_requires_token(client, users):
    response = client.post("/sessions/", json=api_payload())
    assert response.status_code == 401


def test_student_cannot_create(client, users):
    response = client.post("/sessions/", json=api_payload(), headers=auth_headers(users["student1"]))
    assert response.status_code == 403


def test_invalid_token(client, users):
    response = client.post("/sessions/", json=api_payload(), headers={"Authorization": "Bearer not.a.token"})
    assert response.status_code == 401


def test_create_with_invalid_values(client, users):
    response = client.post(
        "/sessions/",
        json=api_payload(capacity={"max_participants": 101}, level="expert"),
        headers=auth_headers(users["tutor"]),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "capacity.max_participants must be between 1 and 100" in body["detail"]
    assert "Level must be beginner, intermediate, or advanced" in body["detail"]


def test_create_in_the_past(client, users):
    schedule = {"date": utcnow() - timedelta(days=1), "start_time": "10:00", "end_time": "11:00"}
    response = client.post("/sessions/", json=api_payload(schedule=schedule), headers=auth_headers(users["tutor"]))

    assert response.status_code == 400
    assert response.json()["detail"] == "Session date must be a valid future date"


def test_create_with_missing_fields(client, users):
    payload = api_payload()
    del payload["schedule"]
    response = client.post("/sessions/", json=payload, headers=auth_headers(users["tutor"]))

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_create_strips_markup(client, users):
    body = create_session(client, users["tutor"], description="<b>Learn fractions</b> step by step")
    assert body["description"] == "Learn fractions step by step"


def test_admin_creates_for_tutor(client, users):
    body = create_session(client, users["admin"], tutor_id=users["other_tutor"].id)
    assert body["tutor_id"] == users["other_tutor"].id


def test_admin_cannot_assign_unknown_tutor(client, users):
    response = client.post(
        "/sessions/",
        json=api_payload(tutor_id=generate_uuid()),
        headers=auth_headers(users["admin"]),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


###############
### READING ###
###############

def test_list_sessions(client, users):
    create_session(client, users["tutor"], subject="Mathematics", level="beginner")
    create_session(client, users["tutor"], subject="Physics", level="advanced")

    response = client.get("/sessions/")
    assert response.status_code == 200
    body = response.json()
    assert len(body["sessions"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 2, "total_pages": 1}

    body = client.get("/sessions/", params={"grade": "advanced"}).json()
    assert [s["subject"] for s in body["sessions"]] == ["physics"]

    body = client.get("/sessions/", params={"sortBy": "subject", "sortOrder": "desc", "limit": 1}).json()
    assert [s["subject"] for s in body["sessions"]] == ["physics"]
    assert body["pagination"]["total_pages"] == 2


def test_list_available_seats_only(client, users):
    full = create_session(client, users["tutor"], subject="Chemistry", capacity={"max_participants": 1})
    create_session(client, users["tutor"], subject="Biology")
    client.post(f"/sessions/{full['id']}/join", headers=auth_headers(users["student1"]))

    body = client.get("/sessions/", params={"availableSeatsOnly": "true"}).json()
    assert [s["subject"] for s in body["sessions"]] == ["biology"]


def test_list_with_invalid_filters(client, users):
    assert client.get("/sessions/", params={"status": "finished"}).status_code == 400
    assert client.get("/sessions/", params={"locationType": "moon"}).status_code == 400
    assert client.get("/sessions/", params={"tutor": "abc"}).status_code == 400


def test_get_session(client, users):
    created = create_session(client, users["tutor"])

    response = client.get(f"/sessions/{created['id']}")
    assert response.status_code == 200
    assert response.json()["id"] == created["id"]


def test_get_missing_session(client, users):
    response = client.get(f"/sessions/{generate_uuid()}")
    assert response.status_code == 404
    assert response.json() == {"detail": "Session not found", "code": "NOT_FOUND"}


def test_get_malformed_id(client, users):
    response = client.get("/sessions/12345")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid session id"


def test_tutor_sessions(client, users):
    mine = create_session(client, users["tutor"])
    create_session(client, users["other_tutor"])

    body = client.get(f"/sessions/tutor/{users['tutor'].id}").json()
    assert [s["id"] for s in body] == [mine["id"]]


def test_my_enrolled_sessions(client, users):
    session = create_session(client, users["tutor"])
    create_session(client, users["tutor"])
    headers = auth_headers(users["student1"])
    client.post(f"/sessions/{session['id']}/join", headers=headers)

    response = client.get("/sessions/my-enrolled", headers=headers)
    assert response.status_code == 200
    assert [s["id"] for s in response.json()] == [session["id"]]

    assert client.get("/sessions/my-enrolled").status_code == 401


#####################
### UPDATE/DELETE ###
#####################

def test_update_with_put_and_patch(client, users, calendar_adapter):
    session = create_session(client, users["tutor"])
    headers = auth_headers(users["tutor"])

    response = client.put(f"/sessions/{session['id']}", json={"topic": "Factoring"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["topic"] == "Factoring"

    response = client.patch(f"/sessions/{session['id']}", json={"schedule": {"start_time": "09:00"}}, headers=headers)
    assert response.status_code == 200
    assert response.json()["schedule"]["duration"] == 150
    assert response.json()["topic"] == "Factoring"

    assert calendar_adapter.names() == ["create", "update", "update"]


def test_update_by_other_tutor(client, users):
    session = create_session(client, users["tutor"])
    response = client.put(f"/sessions/{session['id']}", json={"topic": "Mine now"}, headers=auth_headers(users["other_tutor"]))

    assert response.status_code == 403
    assert response.json()["code"] == "UNAUTHORIZED"


def test_update_with_invalid_status_change(client, users):
    session = create_session(client, users["tutor"])
    response = client.patch(f"/sessions/{session['id']}", json={"status": "completed"}, headers=auth_headers(users["tutor"]))

    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot change status from scheduled to completed"


def test_update_capacity_below_enrollment(client, users):
    session = create_session(client, users["tutor"])
    for name in ("student1", "student2"):
        client.post(f"/sessions/{session['id']}/join", headers=auth_headers(users[name]))

    response = client.patch(
        f"/sessions/{session['id']}",
        json={"capacity": {"max_participants": 1}},
        headers=auth_headers(users["tutor"]),
    )
    assert response.status_code == 400


def test_delete_session(client, users, calendar_adapter):
    session = create_session(client, users["tutor"])

    response = client.delete(f"/sessions/{session['id']}", headers=auth_headers(users["tutor"]))
    assert response.status_code == 200
    assert calendar_adapter.calls[-1] == ("delete", "evt-1")
    assert client.get(f"/sessions/{session['id']}").status_code == 404


def test_admin_deletes_any_session(client, users):
    session = create_session(client, users["tutor"])
    response = client.delete(f"/sessions/{session['id']}", headers=auth_headers(users["admin"]))
    assert response.status_code == 200


def test_student_cannot_delete(client, users):
    session = create_session(client, users["tutor"])
    response = client.delete(f"/sessions/{session['id']}", headers=auth_headers(users["student1"]))

    assert response.status_code == 403
    assert client.get(f"/sessions/{session['id']}").status_code == 200


##################
### JOIN/LEAVE ###
##################

def test_join_and_leave(client, users):
    session = create_session(client, users["tutor"])
    headers = auth_headers(users["student1"])

    response = client.post(f"/sessions/{session['id']}/join", headers=headers)
    assert response.status_code == 200
    assert response.json()["current_enrolled"] == 1
    assert response.json()["available_seats"] == 2

    response = client.post(f"/sessions/{session['id']}/join", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "User is already enrolled in this session"

    response = client.post(f"/sessions/{session['id']}/leave", headers=headers)
    assert response.status_code == 200
    assert response.json()["current_enrolled"] == 0

    response = client.post(f"/sessions/{session['id']}/leave", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "User is not enrolled in this session"


def test_join_full_session(client, users):
    session = create_session(client, users["tutor"], capacity={"max_participants": 2})
    for name in ("student1", "student2"):
        assert client.post(f"/sessions/{session['id']}/join", headers=auth_headers(users[name])).status_code == 200

    response = client.post(f"/sessions/{session['id']}/join", headers=auth_headers(users["student3"]))
    assert response.status_code == 400
    assert response.json()["detail"] == "Session is at full capacity"

    capacity = client.get(f"/sessions/{session['id']}").json()["capacity"]
    assert capacity["current_enrolled"] == 2
    assert capacity["is_full"] is True


def test_join_requires_token(client, users):
    session = create_session(client, users["tutor"])
    assert client.post(f"/sessions/{session['id']}/join").status_code == 401


def test_join_missing_session(client, users):
    response = client.post(f"/sessions/{generate_uuid()}/join", headers=auth_headers(users["student1"]))
    assert response.status_code == 404


############################
### PARTICIPANTS/FEEDBACK ###
############################

def test_participant_status_and_feedback(client, users):
    session = create_session(client, users["tutor"])
    student = users["student1"]
    client.post(f"/sessions/{session['id']}/join", headers=auth_headers(student))

    response = client.patch(
        f"/sessions/{session['id']}/participants/{student.id}",
        json={"status": "attended"},
        headers=auth_headers(users["tutor"]),
    )
    assert response.status_code == 200
    assert response.json()["participants"][0]["status"] == "attended"
    assert response.json()["capacity"]["current_enrolled"] == 1

    response = client.post(
        f"/sessions/{session['id']}/feedback",
        json={"rating": 5, "feedback": "Great explanations"},
        headers=auth_headers(student),
    )
    assert response.status_code == 200
    assert response.json()["average_rating"] == 5.0
    assert response.json()["feedback_count"] == 1

    response = client.post(f"/sessions/{session['id']}/feedback", json={"rating": 4}, headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["detail"] == "Feedback already provided by this user"


def test_dropping_participant_frees_seat(client, users):
    session = create_session(client, users["tutor"], capacity={"max_participants": 1})
    student = users["student1"]
    client.post(f"/sessions/{session['id']}/join", headers=auth_headers(student))

    response = client.patch(
        f"/sessions/{session['id']}/participants/{student.id}",
        json={"status": "dropped"},
        headers=auth_headers(users["tutor"]),
    )
    assert response.json()["capacity"]["current_enrolled"] == 0

    response = client.post(f"/sessions/{session['id']}/join", headers=auth_headers(users["student2"]))
    assert response.status_code == 200


def test_student_cannot_change_participant_status(client, users):
    session = create_session(client, users["tutor"])
    student = users["student1"]
    client.post(f"/sessions/{session['id']}/join", headers=auth_headers(student))

    response = client.patch(
        f"/sessions/{session['id']}/participants/{student.id}",
        json={"status": "attended"},
        headers=auth_headers(student),
    )
    assert response.status_code == 403


def test_feedback_rating_out_of_range(client, users):
    session = create_session(client, users["tutor"])
    student = users["student1"]
    client.post(f"/sessions/{session['id']}/join", headers=auth_headers(student))

    response = client.post(f"/sessions/{session['id']}/feedback", json={"rating": 9}, headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["detail"] == "Rating must be between 1 and 5"
