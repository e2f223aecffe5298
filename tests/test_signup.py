from admin_promotion import AdminPromotionService, MAIN
from db import Admin, User

from conftest import auth_headers, make_user, signup


def test_first_signup_becomes_main_admin_with_forever_plan(client, db):
    r = signup(client, "a@x.com")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["isFirstUser"] is True
    assert body["plan"] == "forever"
    assert body["access_token"]

    user = db.query(User).filter(User.email == "a@x.com").one()
    assert user.plan_tier == "forever"
    admin = db.query(Admin).filter(Admin.email == "a@x.com").one()
    assert admin.type == MAIN


def test_second_signup_is_plain_free_user(client, db):
    signup(client, "a@x.com")
    r = signup(client, "b@x.com", name="Bob")
    body = r.json()
    assert body["isFirstUser"] is False
    assert body["plan"] == "free"
    assert db.query(Admin).filter(Admin.email == "b@x.com").first() is None


def test_client_declared_type_is_ignored(client, db):
    signup(client, "a@x.com")
    r = client.post("/api/signup", json={"email": "b@x.com", "mName": "Bob",
                                         "password": "secret123", "type": "yearly"})
    assert r.json()["plan"] == "free"


def test_duplicate_email_is_rejected(client):
    signup(client, "a@x.com")
    r = signup(client, "A@x.com")
    assert r.status_code == 400
    assert r.json()["error"] == "user_exists"


def test_missing_fields_report_field_list(client):
    r = client.post("/api/signup", json={"email": "a@x.com"})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "validation_error"
    assert set(body["fields"]) >= {"mName", "password"}


def test_concurrent_first_signups_can_both_become_main_admin(db):
    # both requests read the count before either insert lands
    svc = AdminPromotionService()
    seen_a = svc.estimated_user_count(db)
    seen_b = svc.estimated_user_count(db)
    a = make_user(db, "a@x.com")
    b = make_user(db, "b@x.com")

    assert svc.bootstrap_first_user(db, a, seen_a) is True
    assert svc.bootstrap_first_user(db, b, seen_b) is True
    db.commit()

    mains = db.query(Admin).filter(Admin.type == MAIN).all()
    assert sorted(m.email for m in mains) == ["a@x.com", "b@x.com"]


def test_sequential_bootstrap_only_grants_first(db):
    svc = AdminPromotionService()
    first, is_first = svc.signup(db, "a@x.com", "A", "hash")
    second, is_second = svc.signup(db, "b@x.com", "B", "hash")
    assert (is_first, is_second) == (True, False)
    assert db.query(Admin).count() == 1


def test_signin_returns_token_and_admin_flag(client):
    signup(client, "a@x.com", password="pw123456")
    r = client.post("/api/signin", json={"email": "a@x.com", "password": "pw123456"})
    assert r.status_code == 200
    body = r.json()
    assert body["is_admin"] is True
    assert body["access_token"]

    bad = client.post("/api/signin", json={"email": "a@x.com", "password": "nope1234"})
    assert bad.status_code == 401


def test_deactivated_user_cannot_sign_in(client, db):
    user = make_user(db, "c@x.com", password="pw123456")
    user.is_active = False
    db.commit()
    r = client.post("/api/signin", json={"email": "c@x.com", "password": "pw123456"})
    assert r.status_code == 401


def test_deleteuser_requires_admin_and_protects_admins(client, db):
    signup(client, "a@x.com")
    victim = make_user(db, "v@x.com")
    make_user(db, "n@x.com")

    r = client.post("/api/deleteuser", json={"userId": victim.id}, headers=auth_headers("n@x.com"))
    assert r.status_code == 403

    main_admin = db.query(User).filter(User.email == "a@x.com").one()
    r = client.post("/api/deleteuser", json={"userId": main_admin.id}, headers=auth_headers("a@x.com"))
    assert r.status_code == 403
    assert r.json()["error"] == "protected_resource"

    r = client.post("/api/deleteuser", json={"userId": victim.id}, headers=auth_headers("a@x.com"))
    assert r.status_code == 200
    db.expire_all()
    assert db.query(User).filter(User.email == "v@x.com").first() is None
