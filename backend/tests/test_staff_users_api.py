"""
Staff user management and the activity journal.
"""

import pytest

from config import db


class TestStaffUsers:

    @pytest.mark.asyncio
    async def test_role_change_resets_permissions_to_preset(self, client, make_staff):
        _, super_headers = await make_staff("super_admin")
        target, _ = await make_staff("viewer")

        r = await client.put(f"/api/auth/users/{target['id']}", headers=super_headers, json={"role": "support"})
        assert r.status_code == 200, r.text
        updated = r.json()["user"]
        assert updated["role"] == "support"
        assert updated["permissions"]["support.reply"] is True
        assert "password" not in updated
        print("✅ Role change applies the new preset")

    @pytest.mark.asyncio
    async def test_admin_with_users_manage_cannot_touch_super_admin(self, client, make_staff):
        admin, admin_headers = await make_staff("admin")
        await db.users.update_one({"id": admin["id"]}, {"$set": {"permissions": {"users.manage": True}}})
        boss, _ = await make_staff("super_admin")

        r = await client.put(f"/api/auth/users/{boss['id']}", headers=admin_headers, json={"name": "Renamed"})
        assert r.status_code == 403

        r = await client.post("/api/auth/users", headers=admin_headers, json={
            "email": "another.boss@homexpert.test", "password": "secret123", "name": "Boss", "role": "super_admin",
        })
        assert r.status_code == 403
        print("✅ super_admin accounts are protected")

    @pytest.mark.asyncio
    async def test_deactivate_revokes_sessions(self, client, make_staff):
        super_user, super_headers = await make_staff("super_admin")
        target, target_headers = await make_staff("support")

        r = await client.delete(f"/api/auth/users/{super_user['id']}", headers=super_headers)
        assert r.status_code == 400

        r = await client.delete(f"/api/auth/users/{target['id']}", headers=super_headers)
        assert r.status_code == 200, r.text
        assert (await client.get("/api/auth/me", headers=target_headers)).status_code == 401
        assert (await db.users.find_one({"id": target["id"]}))["is_active"] is False
        print("✅ Deactivation disables the account and its sessions")

    @pytest.mark.asyncio
    async def test_list_filters_by_role(self, client, make_staff):
        _, super_headers = await make_staff("super_admin")
        await make_staff("viewer")
        await make_staff("support")

        r = await client.get("/api/auth/users?role=viewer", headers=super_headers)
        assert r.status_code == 200
        assert [u["role"] for u in r.json()["users"]] == ["viewer"]

        r = await client.get("/api/auth/users?role=vendor", headers=super_headers)
        assert r.status_code == 400
        print("✅ User list filters by staff role")


class TestActivityJournal:

    @pytest.mark.asyncio
    async def test_login_and_logout_are_journaled(self, client, make_staff):
        user, _ = await make_staff("admin")
        r = await client.post("/api/auth/login", json={"email": user["email"], "password": "secret123"})
        token = r.json()["token"]
        await client.post("/api/auth/logout", headers={"Authorization": f"Bearer {token}"})

        _, super_headers = await make_staff("super_admin")
        r = await client.get(f"/api/auth/activity-logs?user_id={user['id']}", headers=super_headers)
        assert r.status_code == 200
        actions = [log["action"] for log in r.json()["logs"]]
        assert sorted(actions) == ["login", "logout"]
        print("✅ Login and logout land in the journal")

    @pytest.mark.asyncio
    async def test_date_window(self, client, make_staff):
        await db.activity_logs.insert_many([
            {"id": "a", "action": "create", "entity_type": "lead", "actor_type": "admin", "created_at": "2026-01-05T10:00:00+00:00"},
            {"id": "b", "action": "create", "entity_type": "lead", "actor_type": "admin", "created_at": "2026-02-05T10:00:00+00:00"},
        ])
        _, super_headers = await make_staff("super_admin")

        r = await client.get(
            "/api/auth/activity-logs?entity_type=lead&date_from=2026-02-01&date_to=2026-03-01",
            headers=super_headers,
        )
        assert r.status_code == 200
        assert [log["id"] for log in r.json()["logs"]] == ["b"]
        assert r.json()["total"] == 1
        print("✅ date_from/date_to bound the journal")

    @pytest.mark.asyncio
    async def test_viewer_cannot_read_journal(self, client, make_staff):
        _, headers = await make_staff("viewer")
        assert (await client.get("/api/auth/activity-logs", headers=headers)).status_code == 403
        print("✅ activity.view required")
