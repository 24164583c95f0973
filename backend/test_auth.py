import io
from types import SimpleNamespace
from unittest import mock

from fastapi import HTTPException, UploadFile
from fastapi.security import HTTPAuthorizationCredentials
from starlette.datastructures import Headers

from campus_testcase import CampusTestCase
import auth_routes
from auth_routes import (
    ChangePasswordRequest,
    LogoutRequest,
    RefreshTokenRequest,
    UserLogin,
    VerifyStudentRequest,
    change_password,
    get_id_card,
    login,
    logout,
    pending_verifications,
    refresh_tokens,
    signup,
    update_profile,
    verify_student,
)
from core import get_current_user

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64
FAKE_REQUEST = SimpleNamespace(client=SimpleNamespace(host="10.0.0.7"))


def id_card(content=JPEG_BYTES):
    return UploadFile(file=io.BytesIO(content), filename="card.jpg", headers=Headers({"content-type": "image/jpeg"}))


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestAuthRoutes(CampusTestCase):
    async def register(self, email="wanjiku@example.com", role="student", admin_code=None, card=True, password="secret123"):
        return await signup(
            FAKE_REQUEST,
            name="Wanjiku",
            email=email,
            password=password,
            role=role,
            admin_code=admin_code,
            id_card=id_card() if card else None,
        )

    async def test_student_signup_stores_id_card_and_issues_tokens(self):
        result = await self.register(email="Wanjiku@Campus.test")
        self.assertEqual(result.user.email, "wanjiku@example.com")
        self.assertEqual(result.user.verification_status, "verified")
        self.assertEqual(result.user.id_card_url, f"/api/auth/id-card/{result.user.id}")

        card = await self.db.user_id_cards.find_one({"user_id": result.user.id})
        self.assertEqual(card["content_type"], "image/jpeg")
        stored_user = await self.db.users.find_one({"id": result.user.id})
        self.assertNotIn("data", stored_user["id_card"])

        current = await get_current_user(bearer(result.access_token))
        self.assertEqual(current["id"], result.user.id)

    async def test_signup_validation(self):
        cases = [
            dict(card=False),
            dict(password="123"),
            dict(email="not-an-email"),
            dict(role="superuser"),
        ]
        for kwargs in cases:
            with self.assertRaises(HTTPException) as ctx:
                await self.register(**kwargs)
            self.assertEqual(ctx.exception.status_code, 400, kwargs)

        with self.assertRaises(HTTPException) as ctx:
            await signup(
                FAKE_REQUEST,
                name="Wanjiku",
                email="x@example.com",
                password="secret123",
                role="student",
                admin_code=None,
                id_card=id_card(b"%PDF-1.4 not an image"),
            )
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_duplicate_email_rejected(self):
        await self.register()
        with self.assertRaises(HTTPException) as ctx:
            await self.register(email="WANJIKU@example.com")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_admin_signup_requires_code(self):
        with mock.patch.object(auth_routes, "ADMIN_SIGNUP_CODE", ""):
            with self.assertRaises(HTTPException) as ctx:
                await self.register(email="boss@example.com", role="admin", card=False, admin_code="anything")
            self.assertEqual(ctx.exception.status_code, 403)
        with mock.patch.object(auth_routes, "ADMIN_SIGNUP_CODE", "let-me-in"):
            with self.assertRaises(HTTPException):
                await self.register(email="boss@example.com", role="admin", card=False, admin_code="wrong")
            result = await self.register(email="boss@example.com", role="admin", card=False, admin_code="let-me-in")
        self.assertEqual(result.user.role, "admin")

    async def test_pending_student_flow_and_admin_verification(self):
        with mock.patch.object(auth_routes, "AUTO_VERIFY_STUDENTS", False):
            result = await self.register()
            self.assertEqual(result.user.verification_status, "pending")
            admin = await self.make_user("Registrar", role="admin")
            pending = await pending_verifications(current_user=admin)
            self.assertEqual([u.id for u in pending["pending_users"]], [result.user.id])

            decided = await verify_student(result.user.id, VerifyStudentRequest(status="rejected"), current_user=admin)
            self.assertEqual(decided["user"].verification_status, "rejected")
            with self.assertRaises(HTTPException) as ctx:
                await login(UserLogin(email="wanjiku@example.com", password="secret123"), FAKE_REQUEST)
            self.assertEqual(ctx.exception.status_code, 403)

        notes = await self.notifications_for(result.user.id)
        self.assertEqual(notes[0]["related_model"], "User")

    async def test_login_auto_verifies_pending_student(self):
        student = await self.make_user("Juma", verification_status="pending")
        result = await login(UserLogin(email=student["email"], password="secret123"), FAKE_REQUEST)
        self.assertEqual(result.user.verification_status, "verified")

    async def test_login_rejects_bad_credentials_and_inactive(self):
        student = await self.make_user("Juma")
        with self.assertRaises(HTTPException) as ctx:
            await login(UserLogin(email=student["email"], password="wrong-pass"), FAKE_REQUEST)
        self.assertEqual(ctx.exception.status_code, 401)

        await self.db.users.update_one({"id": student["id"]}, {"$set": {"is_active": False}})
        with self.assertRaises(HTTPException) as ctx:
            await login(UserLogin(email=student["email"], password="secret123"), FAKE_REQUEST)
        self.assertEqual(ctx.exception.status_code, 401)

    async def test_refresh_rotates_tokens(self):
        issued = await self.register()
        rotated = await refresh_tokens(RefreshTokenRequest(refresh_token=issued.refresh_token))
        self.assertNotEqual(rotated.refresh_token, issued.refresh_token)
        with self.assertRaises(HTTPException) as ctx:
            await refresh_tokens(RefreshTokenRequest(refresh_token=issued.refresh_token))
        self.assertEqual(ctx.exception.status_code, 401)
        with self.assertRaises(HTTPException):
            await refresh_tokens(RefreshTokenRequest(refresh_token=issued.access_token))

    async def test_logout_revokes_access_and_refresh(self):
        issued = await self.register()
        await logout(LogoutRequest(refresh_token=issued.refresh_token), credentials=bearer(issued.access_token))
        with self.assertRaises(HTTPException) as ctx:
            await get_current_user(bearer(issued.access_token))
        self.assertEqual(ctx.exception.status_code, 401)
        with self.assertRaises(HTTPException):
            await refresh_tokens(RefreshTokenRequest(refresh_token=issued.refresh_token))

    async def test_change_password_invalidates_refresh_tokens(self):
        issued = await self.register()
        user = await get_current_user(bearer(issued.access_token))
        with self.assertRaises(HTTPException) as ctx:
            await change_password(
                ChangePasswordRequest(current_password="wrong-one", new_password="newsecret1"), current_user=user
            )
        self.assertEqual(ctx.exception.status_code, 400)

        await change_password(
            ChangePasswordRequest(current_password="secret123", new_password="newsecret1"), current_user=user
        )
        self.assertEqual(await self.db.refresh_tokens.count_documents({"user_id": user["id"]}), 0)
        result = await login(UserLogin(email=user["email"], password="newsecret1"), FAKE_REQUEST)
        self.assertEqual(result.user.id, user["id"])

    async def test_profile_update_and_card_reupload_resets_verification(self):
        issued = await self.register()
        user = await get_current_user(bearer(issued.access_token))
        with self.assertRaises(HTTPException):
            await update_profile(name=None, avatar=None, id_card=None, current_user=user)
        renamed = await update_profile(name="Wanjiku M.", avatar=None, id_card=None, current_user=user)
        self.assertEqual(renamed["user"].name, "Wanjiku M.")
        updated = await update_profile(name=None, avatar=None, id_card=id_card(), current_user=user)
        self.assertEqual(updated["user"].verification_status, "pending")

    async def test_id_card_visible_to_owner_and_admin_only(self):
        issued = await self.register()
        owner = await get_current_user(bearer(issued.access_token))
        response = await get_id_card(owner["id"], current_user=owner)
        self.assertEqual(response.body, JPEG_BYTES)
        self.assertEqual(response.media_type, "image/jpeg")

        admin = await self.make_user("Registrar", role="admin")
        await get_id_card(owner["id"], current_user=admin)
        stranger = await self.make_user("Stranger")
        with self.assertRaises(HTTPException) as ctx:
            await get_id_card(owner["id"], current_user=stranger)
        self.assertEqual(ctx.exception.status_code, 403)
