import unittest

from services.crm_rbac import (
    NAVIGATION_PERMISSIONS,
    ROLE_PERMISSIONS,
    Permission,
    Role,
    can_access_navigation,
    has_permission,
    navigation_map,
    parse_role,
    permission_map,
    role_permissions,
)


class CrmRbacTests(unittest.TestCase):
    def test_every_role_has_a_table_entry(self):
        self.assertEqual(set(ROLE_PERMISSIONS), set(Role))

    def test_admin_holds_every_permission(self):
        for permission in Permission:
            self.assertTrue(has_permission(Role.ADMIN, permission), permission)

    def test_manager_cannot_touch_system_configuration_or_delete(self):
        self.assertTrue(has_permission("manager", Permission.VIEW_ALL_LEADS))
        self.assertTrue(has_permission("manager", Permission.ASSIGN_LEADS))
        self.assertFalse(has_permission("manager", Permission.ACCESS_SYSTEM_CONFIGURATION))
        self.assertFalse(has_permission("manager", Permission.DELETE_USERS))
        self.assertFalse(has_permission("manager", Permission.DELETE_ANY_DATA))
        self.assertFalse(has_permission("manager", Permission.RUN_BACKUPS))

    def test_sales_sees_only_own_records(self):
        self.assertTrue(has_permission("sales", Permission.MANAGE_LEADS))
        self.assertFalse(has_permission("sales", Permission.VIEW_ALL_LEADS))
        self.assertFalse(has_permission("sales", Permission.ACCESS_USER_MANAGEMENT))
        self.assertFalse(has_permission("sales", Permission.ACCESS_REPORTS))

    def test_support_has_no_deal_access(self):
        self.assertFalse(has_permission("support", Permission.ACCESS_DEALS))
        self.assertTrue(has_permission("support", Permission.ADD_CUSTOMER_NOTES))
        self.assertFalse(has_permission("support", Permission.MANAGE_LEADS))

    def test_unknown_inputs_fail_closed(self):
        self.assertFalse(has_permission(None, Permission.ACCESS_DASHBOARD))
        self.assertFalse(has_permission("superuser", Permission.ACCESS_DASHBOARD))
        self.assertFalse(has_permission("admin", "canDoAnything"))
        self.assertEqual(role_permissions("intern"), frozenset())

    def test_permission_keys_accept_strings(self):
        self.assertTrue(has_permission("admin", "canRunBackups"))
        self.assertFalse(has_permission("sales", "canRunBackups"))

    def test_parse_role_normalizes_case(self):
        self.assertIs(parse_role(" Manager "), Role.MANAGER)
        self.assertIsNone(parse_role(""))

    def test_table_is_read_only(self):
        with self.assertRaises(TypeError):
            ROLE_PERMISSIONS[Role.SALES] = frozenset(Permission)  # type: ignore[index]
        self.assertIsInstance(ROLE_PERMISSIONS[Role.SALES], frozenset)

    def test_navigation_gates_match_permissions(self):
        self.assertTrue(can_access_navigation("manager", "/admin/users"))
        self.assertFalse(can_access_navigation("manager", "/admin/settings"))
        self.assertFalse(can_access_navigation("support", "/deals/"))
        # Ungated paths are open to any role.
        self.assertTrue(can_access_navigation("support", "/profile"))

    def test_maps_cover_every_key(self):
        perms = permission_map("sales")
        self.assertEqual(set(perms), {permission.value for permission in Permission})
        self.assertTrue(perms["canManageLeads"])
        self.assertFalse(perms["canViewAllLeads"])
        nav = navigation_map("support")
        self.assertEqual(set(nav), set(NAVIGATION_PERMISSIONS))
        self.assertFalse(nav["/reports"])


if __name__ == "__main__":
    unittest.main()
