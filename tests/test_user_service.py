import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from services.crm_errors import Conflict, Forbidden, NotFound, ValidationError
from services.crm_store import reset_memory_store_for_tests
from services.principal import principal_from_user
from services.user_service import (
    PASSWORD_RE,
    authenticate,
    change_own_password,
    create_user,
    delete_user,
    generate_password,
    get_own_profile,
    get_user,
    hash_password,
    list_users,
    update_user,
    verify_password,
)
from shared.db import Base, Company, User


class UserServiceTests(unittest.TestCase):
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

        self.admin_user = self._user(self.company_a, "admin", "admin@acme.com")
        self.manager_user = self._user(self.company_a, "manager", "manager@acme.com")
        self.sales_user = self._user(self.company_a, "sales", "sales@acme.com")
        self.other_user = self._user(self.company_b, "admin", "admin@globex.com")
        self.admin = principal_from_user(self.admin_user)
        self.manager = principal_from_user(self.manager_user)
        self.sales = principal_from_user(self.sales_user)

    def tearDown(self):
        self.db.close()

    def _user(self, company, role, email, password="Passw0rd!"):
        user = User(
            company_id=company.id,
            name=email.split("@")[0],
            email=email,
            password_hash=hash_password(password),
            role=role,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def test_password_hash_round_trip(self):
        stored = hash_password("Secret1!")
        self.assertTrue(verify_password("Secret1!", stored))
        self.assertFalse(verify_password("secret1!", stored))
        self.assertFalse(verify_password("Secret1!", "no-salt"))

    def test_generated_password_meets_policy(self):
        for _ in range(20):
            password = generate_password()
            self.assertGreaterEqual(len(password), 8)
            self.assertTrue(PASSWORD_RE.match(password))

    def test_admin_lists_only_own_tenant(self):
        emails = {user["email"] for user in list_users(self.db, self.admin)}
        self.assertEqual(emails, {"admin@acme.com", "manager@acme.com", "sales@acme.com"})
        self.assertNotIn("passwordHash", list_users(self.db, self.admin)[0])

    def test_sales_cannot_list_users(self):
        with self.assertRaises(Forbidden):
            list_users(self.db, self.sales)

    def test_own_profile_is_separate_from_user_management(self):
        self.assertEqual(get_own_profile(self.db, self.sales)["email"], "sales@acme.com")
        with self.assertRaises(Forbidden):
            get_user(self.db, self.sales, self.sales.id)
        with self.assertRaises(Forbidden):
            get_user(self.db, self.sales, self.manager.id)
        self.assertEqual(get_user(self.db, self.manager, self.sales.id)["email"], "sales@acme.com")
        with self.assertRaises(NotFound):
            get_user(self.db, self.admin, self.other_user.id)

    def test_create_user_in_callers_company(self):
        user, generated = create_user(
            self.db,
            self.admin,
            {"name": "New Rep", "email": "New@Acme.com", "role": "sales", "companyId": str(self.company_b.id)},
        )
        self.assertEqual(user["companyId"], str(self.company_a.id))
        self.assertEqual(user["email"], "new@acme.com")
        self.assertTrue(generated)
        self.assertIsNotNone(authenticate(self.db, "new@acme.com", generated))

    def test_only_admin_grants_admin(self):
        with self.assertRaises(Forbidden):
            create_user(self.db, self.manager, {"name": "Boss", "email": "boss@acme.com", "role": "admin"})
        with self.assertRaises(Forbidden):
            update_user(self.db, self.manager, self.sales.id, {"role": "admin"})
        with self.assertRaises(Forbidden):
            update_user(self.db, self.manager, self.admin.id, {"name": "Renamed"})
        updated = update_user(self.db, self.admin, self.sales.id, {"role": "manager"})
        self.assertEqual(updated["role"], "manager")

    def test_duplicate_email_conflicts(self):
        with self.assertRaises(Conflict):
            create_user(self.db, self.admin, {"name": "Dup", "email": "admin@globex.com"})
        with self.assertRaises(Conflict):
            update_user(self.db, self.admin, self.sales.id, {"email": "manager@acme.com"})

    def test_create_rejects_weak_password_and_bad_role(self):
        with self.assertRaises(ValidationError):
            create_user(self.db, self.admin, {"name": "W", "email": "w@acme.com", "password": "password"})
        with self.assertRaises(ValidationError):
            create_user(self.db, self.admin, {"name": "W", "email": "w@acme.com", "role": "owner"})

    def test_user_denials_are_logged(self):
        with self.assertLogs("services.route_guard", level="WARNING") as logs:
            with self.assertRaises(NotFound):
                delete_user(self.db, self.admin, self.other_user.id)
        self.assertIn("role=admin permission=canDeleteUsers entity=user", logs.output[0])
        with self.assertLogs("services.route_guard", level="WARNING") as logs:
            with self.assertRaises(Forbidden):
                update_user(self.db, self.manager, self.admin.id, {"name": "Renamed"})
        self.assertIn("role=manager permission=canEditUsers entity=user", logs.output[0])

    def test_delete_rules(self):
        with self.assertRaises(ValidationError):
            delete_user(self.db, self.admin, self.admin.id)
        with self.assertRaises(Forbidden):
            delete_user(self.db, self.manager, self.sales.id)
        with self.assertRaises(NotFound):
            delete_user(self.db, self.admin, self.other_user.id)
        delete_user(self.db, self.admin, self.sales.id)
        self.assertIsNone(self.db.get(User, self.sales_user.id))

    def test_self_demotion_and_deactivation_blocked(self):
        with self.assertRaises(ValidationError):
            update_user(self.db, self.admin, self.admin.id, {"role": "sales"})
        with self.assertRaises(ValidationError):
            update_user(self.db, self.admin, self.admin.id, {"isActive": False})

    def test_authenticate_rules(self):
        self.assertIsNotNone(authenticate(self.db, "SALES@acme.com", "Passw0rd!"))
        self.assertIsNone(authenticate(self.db, "sales@acme.com", "wrong"))
        self.sales_user.is_active = False
        self.assertIsNone(authenticate(self.db, "sales@acme.com", "Passw0rd!"))
        self.company_a.is_active = False
        self.assertIsNone(authenticate(self.db, "admin@acme.com", "Passw0rd!"))

    def test_change_own_password(self):
        with self.assertRaises(ValidationError):
            change_own_password(self.db, self.sales, "wrong", "N3wPassword!")
        change_own_password(self.db, self.sales, "Passw0rd!", "N3wPassword!")
        self.assertIsNotNone(authenticate(self.db, "sales@acme.com", "N3wPassword!"))


if __name__ == "__main__":
    unittest.main()
