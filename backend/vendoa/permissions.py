# Overview: Permission codes and the roles that hold them.
# Each permission is defined as: (code, description, roles)

ALL_ROLES = ("admin", "manager", "cashier")
MANAGEMENT_ROLES = ("admin", "manager")
ADMIN_ONLY = ("admin",)


PERMISSION_DEFINITIONS = [
    # -- SALES --
    ("CREATE_SALE", "Check out a cart", ALL_ROLES),
    ("VIEW_SALES", "View sales and receipts", ALL_ROLES),
    ("REFUND_SALE", "Refund items of a completed sale", ALL_ROLES),
    # -- INVENTORY --
    ("VIEW_INVENTORY", "View products and stock movements", ALL_ROLES),
    ("RECEIVE_STOCK", "Receive purchased stock", MANAGEMENT_ROLES),
    ("ADJUST_STOCK", "Correct stock (damage, theft, counts)", MANAGEMENT_ROLES),
    ("MANAGE_PRODUCTS", "Create and edit catalog products", MANAGEMENT_ROLES),
    ("DEACTIVATE_PRODUCT", "Remove products from the catalog", ADMIN_ONLY),
    # -- CUSTOMERS --
    ("VIEW_CUSTOMERS", "View customers and credit history", ALL_ROLES),
    ("MANAGE_CUSTOMERS", "Create and edit customers", ALL_ROLES),
    ("DEACTIVATE_CUSTOMER", "Remove customers", MANAGEMENT_ROLES),
    ("RECORD_CREDIT_PAYMENT", "Record a customer paying down credit", ALL_ROLES),
    ("ADJUST_CREDIT", "Administratively adjust a credit balance", ADMIN_ONLY),
]

ROLE_PERMISSIONS = {
    role: {code for code, _description, roles in PERMISSION_DEFINITIONS if role in roles}
    for role in ALL_ROLES
}


def get_all_permission_codes():
    """Get list of all permission codes."""
    return [perm[0] for perm in PERMISSION_DEFINITIONS]


def role_has_permission(role, code):
    return code in ROLE_PERMISSIONS.get(role, set())
