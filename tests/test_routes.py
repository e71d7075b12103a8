from unittest.mock import MagicMock

from werkzeug.security import generate_password_hash

from config import Config
from errors import ConflictError, NotFoundError
from services import active_directory, catalog, circulation, penalties, reservations


class TestPlumbing:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_unknown_route_uses_error_shape(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": {"code": "NOT_FOUND", "message": "Ressource introuvable"}}


class TestAccessControl:
    def test_login_required(self, client):
        resp = client.get("/api/loans")
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_role(self, login_session):
        client = login_session("etudiant")
        resp = client.post("/api/loans", json={})
        assert resp.status_code == 403
        body = resp.get_json()["error"]
        assert body["code"] == "FORBIDDEN"
        assert body["details"]["role"] == "etudiant"

    def test_bad_token(self, client):
        resp = client.get("/api/auth/verify", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401

    def test_token_identity(self, client, auth_headers):
        resp = client.get("/api/auth/verify", headers=auth_headers("bibliothecaire"))
        assert resp.status_code == 200
        assert resp.get_json()["user"]["role"] == "bibliothecaire"

    def test_cache_admin_only(self, client, auth_headers):
        assert client.delete("/api/catalog/cache", headers=auth_headers("circulation")).status_code == 403
        resp = client.delete("/api/catalog/cache", headers=auth_headers("admin"))
        assert resp.status_code == 200
        assert resp.get_json()["success"] is True


class TestLogin:
    def test_missing_credentials(self, client):
        resp = client.post("/api/auth/login", json={"username": "jdoe"})
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "MISSING_CREDENTIALS"

    def test_invalid_credentials(self, client, monkeypatch, no_audit_writes):
        monkeypatch.setattr(Config, "AD_ENABLED", False)
        monkeypatch.setattr("routes.auth.fetch_one", MagicMock(return_value=None))
        resp = client.post("/api/auth/login", json={"username": "x@udm.edu.cm", "password": "bad"})
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert no_audit_writes  # failed attempt is audited

    def test_local_login_issues_token(self, client, monkeypatch):
        monkeypatch.setattr(Config, "AD_ENABLED", False)
        monkeypatch.setattr("routes.auth.fetch_one", MagicMock(return_value={
            "id": "u-9", "email": "pret@udm.edu.cm", "full_name": "Service du prêt", "role": "circulation",
            "password_hash": generate_password_hash("Pret2024!"), "is_active": 1,
        }))
        monkeypatch.setattr("routes.auth.execute", MagicMock(return_value=1))

        resp = client.post("/api/auth/login", json={"email": "PRET@udm.edu.cm", "password": "Pret2024!"})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["user"]["source"] == "local"

        client.post("/api/auth/logout")
        verify = client.get("/api/auth/verify", headers={"Authorization": f"Bearer {body['token']}"})
        assert verify.get_json()["user"]["user_id"] == "u-9"

    def test_ad_unreachable_falls_back_to_local(self, client, monkeypatch):
        from ldap3.core.exceptions import LDAPSocketOpenError

        monkeypatch.setattr(Config, "AD_ENABLED", True)
        monkeypatch.setattr("routes.auth.active_directory.authenticate_user",
                            MagicMock(side_effect=LDAPSocketOpenError("down")))
        local = MagicMock(return_value=None)
        monkeypatch.setattr("routes.auth.fetch_one", local)
        resp = client.post("/api/auth/login", json={"username": "jdoe", "password": "pw"})
        assert resp.status_code == 401
        local.assert_called_once()


class TestLoans:
    def test_create(self, client, auth_headers, monkeypatch):
        create = MagicMock(return_value={"id": "l-1", "status": "active"})
        monkeypatch.setattr(circulation, "create_loan", create)
        resp = client.post("/api/loans", json={"user_id": "u-2", "document_id": "b-1"},
                           headers=auth_headers("circulation", user_id="staff-1"))
        assert resp.status_code == 201
        assert resp.get_json()["data"]["id"] == "l-1"
        assert create.call_args.kwargs["actor"] == "staff-1"

    def test_business_refusal_is_422(self, client, auth_headers, monkeypatch):
        monkeypatch.setattr(circulation, "create_loan", MagicMock(
            side_effect=ConflictError("LOAN_LIMIT_EXCEEDED", "Limite d'emprunts atteinte", details={"max": 3})
        ))
        resp = client.post("/api/loans", json={}, headers=auth_headers("bibliothecaire"))
        assert resp.status_code == 422
        assert resp.get_json()["error"] == {
            "code": "LOAN_LIMIT_EXCEEDED", "message": "Limite d'emprunts atteinte", "details": {"max": 3},
        }

    def test_not_found(self, client, auth_headers, monkeypatch):
        monkeypatch.setattr(circulation, "return_loan", MagicMock(side_effect=NotFoundError("Emprunt non trouvé")))
        resp = client.post("/api/loans/l-404/return", json={}, headers=auth_headers("admin"))
        assert resp.status_code == 404

    def test_ad_circulation_desk_can_lend(self, login_session, monkeypatch):
        role, _ = active_directory.determine_role_and_permissions(["CN=Circulation,OU=Groups,DC=udm,DC=local"])
        assert role == "enregistrement"
        client = login_session(role, user_id="desk-1")
        monkeypatch.setattr(circulation, "create_loan", MagicMock(return_value={"id": "l-2", "status": "active"}))
        resp = client.post("/api/loans", json={"user_id": "u-2", "document_id": "b-1"})
        assert resp.status_code == 201

    def test_enregistrement_desk_actions(self, client, auth_headers, monkeypatch):
        headers = auth_headers("enregistrement", user_id="desk-2")
        monkeypatch.setattr(reservations, "fulfill_reservation", MagicMock(
            return_value={"reservation": {"id": "r-1"}, "loan_id": "l-3", "due_date": "2024-07-01"}
        ))
        resp = client.post("/api/reservations/r-1/fulfill", headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["loan_id"] == "l-3"

        monkeypatch.setattr(penalties, "mark_penalty_paid", MagicMock())
        monkeypatch.setattr(penalties, "get_penalty", MagicMock(return_value={"id": "p-1", "amount_fcfa": "500"}))
        resp = client.post("/api/penalties/p-1/pay", json={"payment_method": "cash"}, headers=headers)
        assert resp.status_code == 200
        assert penalties.mark_penalty_paid.call_args.kwargs["processed_by"] == "desk-2"


class TestCatalog:
    def test_search_is_public(self, client, monkeypatch):
        search = MagicMock(return_value={"data": [], "total": 0, "cached": False})
        monkeypatch.setattr(catalog, "search_catalog", search)
        resp = client.get("/api/catalog/search?search=paludisme&type=theses")
        assert resp.status_code == 200
        assert search.call_args.args[0] == {"search": "paludisme", "type": "theses"}


class TestProfile:
    def test_ad_account_cannot_change_password(self, login_session):
        client = login_session("etudiant")
        resp = client.post("/api/profile/change-password", json={"new_password": "x" * 10})
        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "AD_ACCOUNT"

    def test_short_password(self, client, auth_headers):
        resp = client.post("/api/profile/change-password",
                           json={"old_password": "a", "new_password": "short", "confirm_password": "short"},
                           headers=auth_headers("bibliothecaire"))
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "PASSWORD_TOO_SHORT"


class TestAnalytics:
    def test_unknown_export_section(self, client, auth_headers):
        resp = client.get("/api/analytics/export/secret", headers=auth_headers("admin"))
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "VALIDATION_ERROR"

    def test_csv_export(self, client, auth_headers, monkeypatch):
        from services import analytics

        monkeypatch.setitem(analytics.EXPORT_SECTIONS, "top_domains",
                            ("Domaines", lambda: [{"domain": "Médecine", "loans": 4}]))
        resp = client.get("/api/analytics/export/top_domains?format=csv", headers=auth_headers("admin"))
        assert resp.status_code == 200
        assert "Médecine" in resp.data.decode("utf-8-sig")


class TestAdmin:
    def test_scheduler_reload_when_stopped(self, client, auth_headers):
        resp = client.post("/api/admin/scheduler/reload", headers=auth_headers("admin"))
        assert resp.status_code == 409
        assert resp.get_json()["error"]["code"] == "SCHEDULER_NOT_RUNNING"
