"""Registration, email verification, login, password reset and addresses"""
from datetime import datetime, timedelta

from pharmacy_service.models.user import Role, User, VerificationToken
from pharmacy_service.services.auth import decode_access_token, hash_password

ADDRESS = {
    "addressLine": "Calle 23 #456",
    "town": "Vedado",
    "municipality": "Plaza",
    "province": "La Habana",
}


def register(client, **overrides):
    form = {
        "name": "Lia Gomez",
        "email": "Lia@Example.com",
        "password": "secret123",
        "contactNo": "+13055550100",
    }
    form.update(overrides)
    return client.post("/register", data=form)


class TestRegistration:
    def test_register_sends_verification(self, client, db_session, email_sender):
        response = register(client)

        assert response.status_code == 201
        assert response.json() == {"message": "Email Verification was sent"}
        user = db_session.query(User).filter(User.email == "lia@example.com").one()
        assert user.role == Role.USER
        assert user.email_verified is None
        token = db_session.query(VerificationToken).filter(VerificationToken.email == "lia@example.com").one()
        assert token.token in email_sender.sent[0]["html"]

    def test_duplicate_email(self, client):
        register(client)
        response = register(client, email="lia@example.com")

        assert response.status_code == 400
        assert response.json()["detail"] == "Email already in use!"

    def test_field_errors(self, client):
        response = register(client, name="Li", password="123")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["message"] == "Validation error"
        assert set(detail["errors"]) >= {"name", "password"}

    def test_doctor_can_self_register(self, client, db_session):
        assert register(client, role="DOCTOR").status_code == 201
        assert db_session.query(User).one().role == Role.DOCTOR

    def test_staff_registration_needs_admin(self, client):
        assert register(client, role="PHARMACY_STAFF").status_code == 403

    def test_admin_creates_staff(self, client, make_user, auth_headers, db_session):
        admin = make_user(Role.ADMIN)

        response = client.post(
            "/register",
            data={
                "name": "Staff Member",
                "email": "staff@example.com",
                "password": "secret123",
                "contactNo": "+13055550111",
                "role": "PHARMACY_STAFF",
            },
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        assert db_session.query(User).filter(User.email == "staff@example.com").one().role == Role.PHARMACY_STAFF


class TestEmailVerification:
    def test_verify(self, client, db_session):
        register(client)
        token = db_session.query(VerificationToken).one().token

        response = client.get("/verify-mail", params={"token": token})

        assert response.status_code == 200
        assert response.json() == {"message": "Email Verified"}
        db_session.expire_all()
        assert db_session.query(User).one().email_verified is not None
        assert db_session.query(VerificationToken).count() == 0

    def test_token_is_single_use(self, client, db_session):
        register(client)
        token = db_session.query(VerificationToken).one().token
        client.get("/verify-mail", params={"token": token})

        response = client.get("/verify-mail", params={"token": token})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid token!"

    def test_expired_token(self, client, db_session):
        register(client)
        token = db_session.query(VerificationToken).one()
        token.expires = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()

        response = client.get("/verify-mail", params={"token": token.token})

        assert response.json()["detail"] == "Token has expired!"

    def test_missing_token(self, client):
        assert client.get("/verify-mail").json()["detail"] == "Missing token!"


class TestLogin:
    def test_login_returns_session(self, client, make_user):
        user = make_user(Role.DOCTOR)

        response = client.post("/login", json={"email": user.email, "password": "secret123"})

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["role"] == "DOCTOR"
        ctx = decode_access_token(body["accessToken"])
        assert ctx.user_id == user.id
        assert ctx.role == Role.DOCTOR

    def test_wrong_password(self, client, make_user):
        user = make_user()

        response = client.post("/login", json={"email": user.email, "password": "wrong-pass"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid email or password!"

    def test_unknown_email(self, client):
        response = client.post("/login", json={"email": "nobody@example.com", "password": "secret123"})
        assert response.json()["detail"] == "Invalid email or password!"

    def test_malformed_input(self, client):
        response = client.post("/login", json={"email": "nope"})
        assert response.json()["detail"] == "Invalid field input!"

    def test_unverified_user_gets_new_link(self, client, make_user, email_sender):
        user = make_user(verified=False)

        response = client.post("/login", json={"email": user.email, "password": "secret123"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Please confirm your email address"
        assert email_sender.sent[-1]["subject"] == "Confirm your email"


class TestPasswordReset:
    def test_full_flow(self, client, make_user, db_session, email_sender):
        user = make_user()
        assert client.post("/forgot-password", json={"email": user.email}).status_code == 200
        assert "<b>" in email_sender.sent[-1]["html"]

        # The code is only stored hashed; replace it with a known one
        db_session.expire_all()
        stored = db_session.query(User).filter(User.id == user.id).one()
        stored.reset_password_token = hash_password("4321")
        db_session.commit()

        wrong = client.post("/verify-otp", json={"email": user.email, "otp": "1234"})
        assert wrong.json()["detail"] == "Invalid OTP"

        verified = client.post("/verify-otp", json={"email": user.email, "otp": "4321"})
        assert verified.json() == {"message": "OTP verified successfully"}

        reset = client.post("/resetpassword", json={"email": user.email, "newPassword": "newsecret1"})
        assert reset.json() == {"message": "Password reset successfully"}

        login = client.post("/login", json={"email": user.email, "password": "newsecret1"})
        assert login.status_code == 200

    def test_reset_without_verified_otp(self, client, make_user):
        user = make_user()
        client.post("/forgot-password", json={"email": user.email})

        response = client.post("/resetpassword", json={"email": user.email, "newPassword": "newsecret1"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Please verify your OTP first"

    def test_expired_otp(self, client, make_user, db_session):
        user = make_user()
        client.post("/forgot-password", json={"email": user.email})
        db_session.expire_all()
        stored = db_session.query(User).filter(User.id == user.id).one()
        stored.reset_password_expires = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()

        response = client.post("/verify-otp", json={"email": user.email, "otp": "0000"})

        assert response.json()["detail"] == "OTP has expired"

    def test_unknown_user(self, client):
        response = client.post("/forgot-password", json={"email": "nobody@example.com"})
        assert response.status_code == 400


class TestAddress:
    def test_add_and_read(self, client, make_user, auth_headers):
        user = make_user()

        added = client.post("/user/address", json=ADDRESS, headers=auth_headers(user))
        profile = client.get("/user/address", headers=auth_headers(user))

        assert added.status_code == 200
        assert added.json()["address"]["country"] == "Cuba"
        assert profile.json()["user"]["deliveryAddress"]["town"] == "Vedado"

    def test_second_add_is_rejected(self, client, make_user, auth_headers):
        user = make_user()
        client.post("/user/address", json=ADDRESS, headers=auth_headers(user))

        response = client.post("/user/address", json=ADDRESS, headers=auth_headers(user))

        assert response.status_code == 400

    def test_update_creates_when_missing(self, client, make_user, auth_headers):
        user = make_user()

        response = client.put("/user/address", json={**ADDRESS, "town": "Miramar"}, headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["address"]["town"] == "Miramar"

    def test_requires_session(self, client):
        assert client.get("/user/address").status_code == 401
        assert client.post("/user/address", json=ADDRESS).status_code == 401

    def test_short_address_line(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post("/user/address", json={**ADDRESS, "addressLine": "C 1"}, headers=auth_headers(user))
        assert response.status_code == 400


class TestUpdateInfo:
    def test_update(self, client, make_user, auth_headers, db_session):
        user = make_user()

        response = client.post(
            "/user/update-info",
            data={"name": "Lia Maria", "contactNo": "+13055550199"},
            headers=auth_headers(user),
        )

        assert response.json() == {"message": "User info updated"}
        db_session.expire_all()
        assert db_session.query(User).filter(User.id == user.id).one().name == "Lia Maria"

    def test_cannot_promote_to_staff(self, client, make_user, auth_headers):
        user = make_user()

        response = client.post(
            "/user/update-info",
            data={"name": "Lia", "contactNo": "+13055550199", "role": "ADMIN"},
            headers=auth_headers(user),
        )

        assert response.status_code == 400
