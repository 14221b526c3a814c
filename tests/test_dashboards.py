import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from services.crm_errors import Forbidden, Unauthenticated
from services.crm_rbac import Role
from services.crm_service import create_record, update_record
from services.crm_store import reset_memory_store_for_tests
from services.dashboards import (
    DASHBOARD_BUILDERS,
    build_dashboard,
    build_report,
    report_rows,
    reports_overview,
)
from services.principal import Principal, principal_from_user
from shared.db import Base, Company, User


class DashboardTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()

        self.company_a = Company(name="Acme", domain="acme.com")
        self.company_b = Company(name="Globex", domain="globex.com")
        self.db.add_all([self.company_a, self.company_b])
        self.db.flush()
        self.admin = self._principal(self.company_a, "admin", "admin@acme.com")
        self.manager = self._principal(self.company_a, "manager", "manager@acme.com")
        self.sales = self._principal(self.company_a, "sales", "sales@acme.com")
        self.support = self._principal(self.company_a, "support", "support@acme.com")
        self.sales_b = self._principal(self.company_b, "sales", "sales@globex.com")

        won = create_record(self.db, self.sales, "deal", {"title": "Won", "value": 500})
        update_record(self.db, self.sales, "deal", won["id"], {"stage": "closed_won"})
        create_record(self.db, self.sales, "deal", {"title": "Open", "value": 200})
        create_record(self.db, self.sales, "lead", {"name": "Lead A"})
        create_record(self.db, self.sales_b, "deal", {"title": "Other tenant", "value": 10000})
        create_record(self.db, self.sales_b, "lead", {"name": "Lead B"})

    def tearDown(self):
        self.db.close()

    def _principal(self, company, role, email):
        user = User(company_id=company.id, name=email.split("@")[0], email=email, password_hash="x$y", role=role)
        self.db.add(user)
        self.db.flush()
        return principal_from_user(user)

    def test_every_role_has_a_builder(self):
        self.assertEqual(set(DASHBOARD_BUILDERS), set(Role))

    def test_manager_aggregates_stay_in_tenant(self):
        data = build_dashboard(self.db, self.manager)
        self.assertEqual(data["role"], "manager")
        self.assertEqual(data["teamMembers"], 4)
        self.assertEqual(data["teamDealsValue"], 700)
        self.assertEqual(data["openPipelineValue"], 200)
        self.assertEqual(data["topPerformers"][0]["userId"], self.sales.id)
        self.assertEqual(data["topPerformers"][0]["wonValue"], 500)

    def test_admin_totals(self):
        data = build_dashboard(self.db, self.admin)
        self.assertEqual(data["totals"]["users"], 4)
        self.assertEqual(data["totals"]["deals"], 2)
        self.assertEqual(data["totals"]["leads"], 1)
        self.assertEqual(data["wonValue"], 500)
        self.assertTrue(data["recentActivity"])

    def test_sales_dashboard_is_personal(self):
        data = build_dashboard(self.db, self.sales)
        self.assertEqual(data["myLeads"], 1)
        self.assertEqual(data["leadsByStatus"]["new"], 1)
        self.assertEqual(data["openDealValue"], 200)
        self.assertEqual(data["wonDeals"], 1)

    def test_support_dashboard_skips_deals(self):
        data = build_dashboard(self.db, self.support)
        self.assertEqual(data["customers"], 0)
        self.assertNotIn("openDealValue", data)

    def test_dashboard_requires_authentication(self):
        with self.assertRaises(Unauthenticated):
            build_dashboard(self.db, Principal(id="1", role=None, company_id="1"))

    def test_reports_require_permission(self):
        with self.assertRaises(Forbidden):
            build_report(self.sales, "deal")
        with self.assertRaises(Forbidden):
            reports_overview(self.support)

    def test_report_summary_and_rows(self):
        summary = build_report(self.manager, "deal")
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["byStage"], {"closed_won": 1, "prospecting": 1})
        self.assertEqual(summary["wonValue"], 500)
        rows = report_rows(self.manager, "lead")
        self.assertEqual([row["name"] for row in rows], ["Lead A"])
        self.assertNotIn("companyId", rows[0])
        overview = reports_overview(self.admin)
        self.assertEqual(set(overview), {"lead", "customer", "deal", "task"})


if __name__ == "__main__":
    unittest.main()
