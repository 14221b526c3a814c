import json
import unittest
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import function_app  # noqa: F401  registers every route before the handlers are imported
from admin_endpoints import admin_users, admin_user_item
from auth_endpoints import auth_login, auth_me, auth_refresh
from company_endpoints import company_setup
from crm_endpoints import crm_lead_convert, crm_lead_item, crm_leads
from dashboard_endpoints import dashboard, report_entity
from services.crm_store import reset_memory_store_for_tests
from shared.db import Base


class DummyRequest:
    def __init__(self, method, params=None, headers=None, route_params=None, body=None):
        self.method = method
        self.params = params or {}
        self.headers = headers or {}
        self.route_params = route_params or {}
        self._body = body

    def get_json(self):
        if self._body is None:
            raise ValueError()
        return self._body


def _payload(resp):
    return json.loads(resp.get_body().decode("utf-8"))


class CrmEndpointTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        patcher = mock.patch("crm_shared.SessionLocal", sessionmaker(bind=self.engine, autoflush=False))
        patcher.start()
        self.addCleanup(patcher.stop)

        self._setup("Acme", "acme.com", "ada@acme.com")
        self._setup("Globex", "globex.com", "gus@globex.com")
        self.admin_token = self._login("ada@acme.com", "Str0ngPass!")
        self.other_admin_token = self._login("gus@globex.com", "Str0ngPass!")

    def _setup(self, name, domain, email):
        resp = company_setup(
            DummyRequest(
                "POST",
                body={
                    "companyName": name,
                    "companyDomain": domain,
                    "adminName": "Admin",
                    "adminEmail": email,
                    "adminPassword": "Str0ngPass!",
                },
            )
        )
        self.assertEqual(resp.status_code, 201)
        return _payload(resp)

    def _login(self, email, password):
        resp = auth_login(DummyRequest("POST", body={"email": email, "password": password}))
        self.assertEqual(resp.status_code, 200)
        return _payload(resp)["token"]

    def _auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def _create_user(self, role, email):
        resp = admin_users(
            DummyRequest("POST", headers=self._auth(self.admin_token), body={"name": role, "email": email, "role": role})
        )
        self.assertEqual(resp.status_code, 201)
        body = _payload(resp)
        return body["user"], self._login(email, body["generatedPassword"])

    def test_preflight_returns_no_content(self):
        resp = crm_leads(DummyRequest("OPTIONS"))
        self.assertEqual(resp.status_code, 204)

    def test_missing_token_is_401(self):
        resp = crm_leads(DummyRequest("GET"))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(_payload(resp)["code"], "auth_required")

    def test_bad_credentials_are_401(self):
        resp = auth_login(DummyRequest("POST", body={"email": "ada@acme.com", "password": "nope"}))
        self.assertEqual(resp.status_code, 401)
        resp = auth_login(DummyRequest("POST", body={}))
        self.assertEqual(resp.status_code, 400)

    def test_me_returns_permissions_and_navigation(self):
        _, sales_token = self._create_user("sales", "sam@acme.com")
        body = _payload(auth_me(DummyRequest("GET", headers=self._auth(sales_token))))
        self.assertEqual(body["user"]["role"], "sales")
        self.assertTrue(body["permissions"]["canManageLeads"])
        self.assertFalse(body["permissions"]["canAccessUserManagement"])
        self.assertFalse(body["navigation"]["/admin/users"])

    def test_sales_gets_generic_forbidden_on_user_management(self):
        _, sales_token = self._create_user("sales", "sam@acme.com")
        resp = admin_users(DummyRequest("GET", headers=self._auth(sales_token)))
        self.assertEqual(resp.status_code, 403)
        body = _payload(resp)
        self.assertEqual(body["code"], "forbidden")
        self.assertNotIn("canAccessUserManagement", body["error"])
        self.assertNotIn("canViewAllUsers", body["error"])

    def test_sales_cannot_read_own_record_through_user_management(self):
        sales, sales_token = self._create_user("sales", "sam@acme.com")
        resp = admin_user_item(
            DummyRequest("GET", headers=self._auth(sales_token), route_params={"id": sales["id"]})
        )
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(_payload(resp)["code"], "forbidden")
        me = _payload(auth_me(DummyRequest("GET", headers=self._auth(sales_token))))
        self.assertEqual(me["user"]["id"], sales["id"])

    def test_refresh_issues_a_working_token(self):
        self.assertEqual(auth_refresh(DummyRequest("POST")).status_code, 401)
        resp = auth_refresh(DummyRequest("POST", headers=self._auth(self.admin_token)))
        self.assertEqual(resp.status_code, 200)
        body = _payload(resp)
        self.assertTrue(body["expiresAt"])
        self.assertEqual(body["user"]["email"], "ada@acme.com")
        me = auth_me(DummyRequest("GET", headers=self._auth(body["token"])))
        self.assertEqual(me.status_code, 200)

    def test_lead_lifecycle_and_cross_tenant_not_found(self):
        created = crm_leads(
            DummyRequest("POST", headers=self._auth(self.admin_token), body={"name": "Lead", "email": "l@l.com"})
        )
        self.assertEqual(created.status_code, 201)
        lead_id = _payload(created)["id"]

        listed = _payload(crm_leads(DummyRequest("GET", headers=self._auth(self.admin_token))))
        self.assertEqual([item["id"] for item in listed["items"]], [lead_id])
        other_list = _payload(crm_leads(DummyRequest("GET", headers=self._auth(self.other_admin_token))))
        self.assertEqual(other_list["items"], [])

        for method in ("GET", "PUT", "DELETE"):
            resp = crm_lead_item(
                DummyRequest(
                    method,
                    headers=self._auth(self.other_admin_token),
                    route_params={"id": lead_id},
                    body={"name": "Stolen"},
                )
            )
            self.assertEqual(resp.status_code, 404, method)

        converted = crm_lead_convert(
            DummyRequest("POST", headers=self._auth(self.admin_token), route_params={"id": lead_id})
        )
        self.assertEqual(converted.status_code, 201)
        again = crm_lead_convert(
            DummyRequest("POST", headers=self._auth(self.admin_token), route_params={"id": lead_id})
        )
        self.assertEqual(again.status_code, 400)
        self.assertEqual(_payload(again)["code"], "validation_error")

    def test_role_change_applies_to_existing_session(self):
        manager, manager_token = self._create_user("manager", "mia@acme.com")
        self.assertEqual(admin_users(DummyRequest("GET", headers=self._auth(manager_token))).status_code, 200)
        demoted = admin_user_item(
            DummyRequest(
                "PUT",
                headers=self._auth(self.admin_token),
                route_params={"id": manager["id"]},
                body={"role": "sales"},
            )
        )
        self.assertEqual(demoted.status_code, 200)
        self.assertEqual(admin_users(DummyRequest("GET", headers=self._auth(manager_token))).status_code, 403)

    def test_deactivated_user_loses_session(self):
        user, token = self._create_user("sales", "sam@acme.com")
        admin_user_item(
            DummyRequest(
                "PUT",
                headers=self._auth(self.admin_token),
                route_params={"id": user["id"]},
                body={"isActive": False},
            )
        )
        self.assertEqual(dashboard(DummyRequest("GET", headers=self._auth(token))).status_code, 401)

    def test_dashboard_and_csv_report(self):
        crm_leads(DummyRequest("POST", headers=self._auth(self.admin_token), body={"name": "Lead", "email": "l@l.com"}))
        board = _payload(dashboard(DummyRequest("GET", headers=self._auth(self.admin_token))))
        self.assertEqual(board["role"], "admin")
        self.assertEqual(board["totals"]["leads"], 1)

        resp = report_entity(
            DummyRequest(
                "GET",
                headers=self._auth(self.admin_token),
                route_params={"entity": "leads"},
                params={"format": "csv"},
            )
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn("text/csv", resp.headers.get("Content-Type"))
        lines = resp.get_body().decode("utf-8").strip().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("id,name,email"))

    def test_csv_export_neutralises_formula_cells(self):
        crm_leads(
            DummyRequest(
                "POST",
                headers=self._auth(self.admin_token),
                body={"name": "=SUM(A1:A9)", "email": "l@l.com"},
            )
        )
        resp = report_entity(
            DummyRequest(
                "GET",
                headers=self._auth(self.admin_token),
                route_params={"entity": "leads"},
                params={"format": "csv"},
            )
        )
        row = resp.get_body().decode("utf-8").strip().splitlines()[1]
        self.assertIn(",'=SUM(A1:A9),", row)

    def test_setup_conflict_is_409(self):
        resp = company_setup(
            DummyRequest(
                "POST",
                body={
                    "companyName": "Acme again",
                    "companyDomain": "acme.com",
                    "adminName": "Admin",
                    "adminEmail": "new@acme.com",
                    "adminPassword": "Str0ngPass!",
                },
            )
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(_payload(resp)["code"], "conflict")


if __name__ == "__main__":
    unittest.main()
