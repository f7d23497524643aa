"""
Closed vocabulary of permission keys.

A permission key is ``"<resource>.<action>"``. Only keys listed in
``PERMISSION_CATALOG`` exist; anything else is rejected at the API boundary
with VALIDATION_ERROR. Role bundles for the default roles live here too so
that seeding, signals and tests share one definition.
"""
from django.db import models

from apps.core.exceptions import ValidationFailed


class Resource(models.TextChoices):
    DASHBOARD = 'dashboard', 'Dashboard'
    CUSTOMERS = 'customers', 'Customers'
    VEHICLES = 'vehicles', 'Vehicles'
    WORK_ORDERS = 'work_orders', 'Work orders'
    INVOICES = 'invoices', 'Invoices'
    INVENTORY = 'inventory', 'Inventory'
    EXPENSES = 'expenses', 'Expenses'
    SALARIES = 'salaries', 'Salaries'
    TECHNICIANS = 'technicians', 'Technicians'
    REPORTS = 'reports', 'Reports'
    SETTINGS = 'settings', 'Settings'
    USERS = 'users', 'Users'
    ROLES = 'roles', 'Roles'
    AUDIT_LOGS = 'audit_logs', 'Audit logs'


class Action(models.TextChoices):
    VIEW = 'view', 'View'
    CREATE = 'create', 'Create'
    UPDATE = 'update', 'Update'
    DELETE = 'delete', 'Delete'
    EXPORT = 'export', 'Export'
    PRINT = 'print', 'Print'
    APPROVE = 'approve', 'Approve'
    CANCEL = 'cancel', 'Cancel'
    COMPLETE = 'complete', 'Complete'
    VOID = 'void', 'Void'
    ADJUST_STOCK = 'adjust_stock', 'Adjust stock'
    VIEW_PERFORMANCE = 'view_performance', 'View performance'
    MANAGE_ASSIGNMENTS = 'manage_assignments', 'Manage assignments'
    FINANCIAL = 'financial', 'Financial'
    OPERATIONS = 'operations', 'Operations'
    PERFORMANCE = 'performance', 'Performance'
    MANAGE_WORKSHOP = 'manage_workshop', 'Manage workshop'
    MANAGE_TAX = 'manage_tax', 'Manage tax'
    MANAGE_ROLES = 'manage_roles', 'Manage roles'
    MANAGE_PERMISSIONS = 'manage_permissions', 'Manage permissions'
    CHANGE_PASSWORD = 'change_password', 'Change password'
    VIEW_FINANCIAL_STATS = 'view_financial_stats', 'View financial stats'
    VIEW_OPEN_ORDERS = 'view_open_orders', 'View open orders'
    VIEW_OPEN_INVOICES = 'view_open_invoices', 'View open invoices'
    VIEW_INVENTORY_ALERTS = 'view_inventory_alerts', 'View inventory alerts'
    VIEW_EXPENSES = 'view_expenses', 'View expenses'
    VIEW_TECHNICIANS_PERFORMANCE = 'view_technicians_performance', 'View technicians performance'
    VIEW_ACTIVITIES = 'view_activities', 'View activities'


# Actions that count as "edit" for resource-level checks
EDIT_ACTIONS = (Action.CREATE, Action.UPDATE, Action.DELETE)


def _entry(resource, action, label, description, category, display_order):
    return {
        'key': f'{resource}.{action}',
        'resource': resource,
        'action': action,
        'label': label,
        'description': description,
        'category': category,
        'display_order': display_order,
    }


PERMISSION_CATALOG = [
    # General
    _entry('dashboard', 'view', 'View Dashboard', 'View dashboard and statistics', 'general', 1),

    # Dashboard sections
    _entry('dashboard', 'view_financial_stats', 'View Financial Stats', 'Revenue and profit cards on the dashboard', 'dashboard', 10),
    _entry('dashboard', 'view_open_orders', 'View Open Orders', 'Open work orders panel', 'dashboard', 20),
    _entry('dashboard', 'view_open_invoices', 'View Open Invoices', 'Unpaid invoices panel', 'dashboard', 30),
    _entry('dashboard', 'view_inventory_alerts', 'View Inventory Alerts', 'Low stock alerts panel', 'dashboard', 40),
    _entry('dashboard', 'view_expenses', 'View Expenses Summary', 'Expenses summary panel', 'dashboard', 50),
    _entry('dashboard', 'view_technicians_performance', 'View Technicians Performance', 'Technician performance panel', 'dashboard', 60),
    _entry('dashboard', 'view_activities', 'View Activities', 'Recent activity feed', 'dashboard', 70),

    # Operations
    _entry('customers', 'view', 'View Customers', 'View customers list and details', 'operations', 10),
    _entry('customers', 'create', 'Create Customer', 'Create new customers', 'operations', 11),
    _entry('customers', 'update', 'Update Customers', 'Update customer data', 'operations', 12),
    _entry('customers', 'delete', 'Delete Customers', 'Delete customers', 'operations', 13),
    _entry('customers', 'export', 'Export Customers', 'Export customer data', 'operations', 14),

    _entry('vehicles', 'view', 'View Vehicles', 'View vehicles list', 'operations', 20),
    _entry('vehicles', 'create', 'Create Vehicle', 'Create new vehicles', 'operations', 21),
    _entry('vehicles', 'update', 'Update Vehicles', 'Update vehicle data', 'operations', 22),
    _entry('vehicles', 'delete', 'Delete Vehicles', 'Delete vehicles', 'operations', 23),

    _entry('work_orders', 'view', 'View Work Orders', 'View work orders', 'operations', 30),
    _entry('work_orders', 'create', 'Create Work Order', 'Create new work orders', 'operations', 31),
    _entry('work_orders', 'update', 'Update Work Orders', 'Update work orders', 'operations', 32),
    _entry('work_orders', 'delete', 'Delete Work Orders', 'Delete work orders', 'operations', 33),
    _entry('work_orders', 'cancel', 'Cancel Work Orders', 'Cancel work orders', 'operations', 34),
    _entry('work_orders', 'complete', 'Complete Work Orders', 'Mark work orders as complete', 'operations', 35),
    _entry('work_orders', 'export', 'Export Work Orders', 'Export work orders data', 'operations', 36),

    # Financial
    _entry('invoices', 'view', 'View Invoices', 'View invoices', 'financial', 40),
    _entry('invoices', 'create', 'Create Invoice', 'Create new invoices', 'financial', 41),
    _entry('invoices', 'update', 'Update Invoices', 'Update invoices', 'financial', 42),
    _entry('invoices', 'delete', 'Delete Invoices', 'Delete invoices', 'financial', 43),
    _entry('invoices', 'print', 'Print Invoices', 'Print invoices', 'financial', 44),
    _entry('invoices', 'export', 'Export Invoices', 'Export invoices data', 'financial', 45),
    _entry('invoices', 'void', 'Void Invoices', 'Void invoices', 'financial', 46),

    _entry('inventory', 'view', 'View Inventory', 'View spare parts inventory', 'operations', 50),
    _entry('inventory', 'create', 'Create Spare Part', 'Add new spare parts', 'operations', 51),
    _entry('inventory', 'update', 'Update Inventory', 'Update spare parts data', 'operations', 52),
    _entry('inventory', 'delete', 'Delete from Inventory', 'Delete spare parts', 'operations', 53),
    _entry('inventory', 'adjust_stock', 'Adjust Stock', 'Adjust stock quantities', 'operations', 54),
    _entry('inventory', 'export', 'Export Inventory', 'Export inventory data', 'operations', 55),

    _entry('expenses', 'view', 'View Expenses', 'View expenses', 'financial', 60),
    _entry('expenses', 'create', 'Create Expense', 'Add new expenses', 'financial', 61),
    _entry('expenses', 'update', 'Update Expenses', 'Update expenses', 'financial', 62),
    _entry('expenses', 'delete', 'Delete Expenses', 'Delete expenses', 'financial', 63),
    _entry('expenses', 'approve', 'Approve Expenses', 'Approve expenses', 'financial', 64),
    _entry('expenses', 'export', 'Export Expenses', 'Export expenses data', 'financial', 65),

    _entry('salaries', 'view', 'View Salaries', 'View salaries', 'financial', 70),
    _entry('salaries', 'create', 'Create Salary', 'Create new salary records', 'financial', 71),
    _entry('salaries', 'update', 'Update Salaries', 'Update salaries', 'financial', 72),
    _entry('salaries', 'delete', 'Delete Salaries', 'Delete salary records', 'financial', 73),
    _entry('salaries', 'approve', 'Approve Salaries', 'Approve salaries', 'financial', 74),
    _entry('salaries', 'export', 'Export Salaries', 'Export salaries data', 'financial', 75),

    _entry('technicians', 'view', 'View Technicians', 'View technicians', 'operations', 80),
    _entry('technicians', 'create', 'Create Technician', 'Add new technicians', 'operations', 81),
    _entry('technicians', 'update', 'Update Technicians', 'Update technicians data', 'operations', 82),
    _entry('technicians', 'delete', 'Delete Technicians', 'Delete technicians', 'operations', 83),
    _entry('technicians', 'view_performance', 'View Technician Performance', 'View technician performance reports', 'operations', 84),
    _entry('technicians', 'manage_assignments', 'Manage Technician Assignments', 'Assign technicians to tasks', 'operations', 85),

    # Reports
    _entry('reports', 'view', 'View Reports', 'View reports', 'reports', 90),
    _entry('reports', 'export', 'Export Reports', 'Export reports', 'reports', 91),
    _entry('reports', 'financial', 'Financial Reports', 'View financial reports', 'reports', 92),
    _entry('reports', 'operations', 'Operations Reports', 'View operations reports', 'reports', 93),
    _entry('reports', 'performance', 'Performance Reports', 'View performance reports', 'reports', 94),

    # Administration
    _entry('settings', 'view', 'View Settings', 'View workshop settings', 'administration', 100),
    _entry('settings', 'update', 'Update Settings', 'Update workshop settings', 'administration', 101),
    _entry('settings', 'manage_workshop', 'Manage Workshop', 'Manage basic workshop data', 'administration', 102),
    _entry('settings', 'manage_tax', 'Manage Tax', 'Manage tax settings', 'administration', 103),

    _entry('users', 'view', 'View Users', 'View users', 'administration', 110),
    _entry('users', 'create', 'Create User', 'Create new users', 'administration', 111),
    _entry('users', 'update', 'Update Users', 'Update user data and status', 'administration', 112),
    _entry('users', 'delete', 'Delete Users', 'Delete users', 'administration', 113),
    _entry('users', 'manage_roles', 'Manage User Roles', 'Assign roles to users', 'administration', 114),
    _entry('users', 'manage_permissions', 'Manage User Permissions', 'Manage permission overrides', 'administration', 115),
    _entry('users', 'change_password', 'Change Passwords', 'Change user passwords', 'administration', 116),

    _entry('roles', 'view', 'View Roles', 'View roles', 'administration', 120),
    _entry('roles', 'create', 'Create Role', 'Create new roles', 'administration', 121),
    _entry('roles', 'update', 'Update Roles', 'Update roles', 'administration', 122),
    _entry('roles', 'delete', 'Delete Roles', 'Delete roles', 'administration', 123),
    _entry('roles', 'manage_permissions', 'Manage Role Permissions', 'Assign permissions to roles', 'administration', 124),

    _entry('audit_logs', 'view', 'View Audit Logs', 'View audit logs', 'administration', 130),
]

_CATALOG_BY_KEY = {entry['key']: entry for entry in PERMISSION_CATALOG}


def permission_keys():
    """All valid permission keys, in catalog order."""
    return [entry['key'] for entry in PERMISSION_CATALOG]


def catalog_entry(key):
    return _CATALOG_BY_KEY.get(key)


def is_valid_key(key):
    return isinstance(key, str) and key in _CATALOG_BY_KEY


def parse_key(key):
    """
    Split a permission key into (resource, action).

    Raises:
        ValidationFailed: if the key is malformed or not in the catalog
    """
    if not isinstance(key, str) or key.count('.') != 1:
        raise ValidationFailed(
            "Permission keys have the form '<resource>.<action>'",
            details={'permission': key},
        )

    resource, action = key.split('.')
    if resource not in Resource.values or action not in Action.values or key not in _CATALOG_BY_KEY:
        raise ValidationFailed(
            f"Unknown permission key: {key}",
            details={'permission': key},
        )
    return resource, action


def validate_keys(keys):
    """Validate every key, reporting all unknown ones at once."""
    unknown = sorted({key for key in keys if not is_valid_key(key)}, key=str)
    if unknown:
        raise ValidationFailed(
            "Unknown permission keys",
            details={'unknown_permissions': unknown},
        )
    return list(keys)


def validate_resource(resource):
    if resource not in Resource.values:
        raise ValidationFailed(
            f"Unknown resource: {resource}",
            details={'resource': resource},
        )
    return resource


# Default role definitions seeded for every organization.
# Only the admin role carries is_system, which is what grants the bypass.
DEFAULT_ROLES = {
    'admin': {
        'name': 'Administrator',
        'description': 'Full access to every feature',
        'is_system': True,
        'permissions': 'ALL',
    },
    'customer_service': {
        'name': 'Customer Service',
        'description': 'Front-desk operations, work orders and invoicing',
        'is_system': False,
        'permissions': [
            'dashboard.view',
            'customers.view', 'customers.create', 'customers.update', 'customers.delete', 'customers.export',
            'vehicles.view', 'vehicles.create', 'vehicles.update', 'vehicles.delete',
            'work_orders.view', 'work_orders.create', 'work_orders.update', 'work_orders.delete',
            'work_orders.cancel', 'work_orders.complete', 'work_orders.export',
            'invoices.view', 'invoices.create', 'invoices.update', 'invoices.delete',
            'invoices.print', 'invoices.export',
            'inventory.view', 'inventory.create', 'inventory.update', 'inventory.adjust_stock', 'inventory.export',
            'technicians.view', 'technicians.view_performance',
            'reports.view', 'reports.export', 'reports.operations',
        ],
    },
    'receptionist': {
        'name': 'Receptionist',
        'description': 'Reception desk: customers, vehicles and intake',
        'is_system': False,
        'permissions': [
            'dashboard.view',
            'customers.view', 'customers.create', 'customers.update',
            'vehicles.view', 'vehicles.create', 'vehicles.update',
            'work_orders.view', 'work_orders.create',
            'invoices.view',
            'expenses.view', 'expenses.create', 'expenses.update', 'expenses.delete',
            'inventory.view',
        ],
    },
}
