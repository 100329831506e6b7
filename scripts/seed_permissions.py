"""
Seed script to populate default permissions, roles and grants.

Run this script after database initialization to create:
- Default system permissions
- Default system roles and their hierarchy
- Initial role-permission grants (including explicit denies)
- Optionally, promote an existing user to admin

Usage:
    uv run python -m scripts.seed_permissions
    uv run python -m scripts.seed_permissions --admin-email someone@example.com
"""
import argparse
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.engine import grant_key
from app.features.permissions.hierarchy import RoleHierarchyResolver
from app.features.permissions.models import Permission, PermissionScope, Role, RolePermission
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

OWN = PermissionScope.OWN
DEPARTMENT = PermissionScope.DEPARTMENT
SCHOOL = PermissionScope.SCHOOL
ALL = PermissionScope.ALL


DEFAULT_PERMISSIONS = [
    # Documents
    ("documents", "CREATE", DEPARTMENT, "Create documents"),
    ("documents", "READ", OWN, "View own documents"),
    ("documents", "READ", DEPARTMENT, "View department documents"),
    ("documents", "READ", ALL, "View all documents"),
    ("documents", "UPDATE", OWN, "Update own documents"),
    ("documents", "UPDATE", DEPARTMENT, "Update department documents"),
    ("documents", "DELETE", ALL, "Delete documents"),
    ("documents", "APPROVE", SCHOOL, "Approve documents school-wide"),

    # Users
    ("users", "READ", OWN, "View own profile"),
    ("users", "READ", ALL, "View all users"),
    ("users", "UPDATE", OWN, "Update own profile"),

    # Access control administration
    ("roles", "READ", ALL, "View roles"),
    ("roles", "UPDATE", ALL, "Manage roles and their grants"),
    ("permissions", "READ", ALL, "View permissions"),
    ("audit", "READ", ALL, "View audit and permission check logs"),
]


# Lower hierarchy_level is more senior; a child must be less senior than its parent
DEFAULT_ROLES = {
    "super_admin": {
        "name": "Super Administrator",
        "level": 1,
        "parent": None,
        "grants": "ALL",
        "denies": [],
    },
    "principal": {
        "name": "Principal",
        "level": 2,
        "parent": None,
        "grants": [
            "documents:READ:ALL", "documents:APPROVE:SCHOOL", "users:READ:ALL",
            "roles:READ:ALL", "audit:READ:ALL",
        ],
        "denies": [],
    },
    "head_of_department": {
        "name": "Head of Department",
        "level": 5,
        "parent": "principal",
        "inherit": False,
        "grants": [
            "documents:CREATE:DEPARTMENT", "documents:READ:DEPARTMENT", "documents:UPDATE:DEPARTMENT",
        ],
        "denies": [],
    },
    "editor": {
        "name": "Editor",
        "level": 10,
        "parent": None,
        "grants": ["documents:READ:ALL", "documents:UPDATE:OWN", "users:READ:OWN", "users:UPDATE:OWN"],
        "denies": [],
    },
    "junior_editor": {
        "name": "Junior Editor",
        "level": 20,
        "parent": "editor",
        "grants": [],
        "denies": ["documents:UPDATE:OWN"],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission codes to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}

    for resource, action, scope, description in DEFAULT_PERMISSIONS:
        code = grant_key(resource, action, scope)
        existing = await db.scalar(select(Permission).where(Permission.code == code))

        if existing:
            log.debug(f"Permission '{code}' already exists, skipping")
            permissions_map[code] = existing
            continue

        permission = Permission(
            code=code,
            name=description,
            resource=resource,
            action=action,
            scope=scope,
            description=description
        )
        db.add(permission)
        permissions_map[code] = permission
        log.info(f"Created permission: {code}")

    await db.flush()
    log.info(f"Seeded {len(permissions_map)} permissions")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]):
    """
    Create default roles, their grants and parent links.

    Args:
        db: Database session
        permissions_map: Dictionary of permission code -> Permission object
    """
    log.info("Creating default roles...")
    roles = {}

    for role_code, role_config in DEFAULT_ROLES.items():
        existing = await db.scalar(select(Role).where(Role.code == role_code))
        if existing:
            log.debug(f"Role '{role_code}' already exists, skipping")
            roles[role_code] = existing
            continue

        role = Role(
            code=role_code,
            name=role_config["name"],
            hierarchy_level=role_config["level"],
            is_system=True,
        )
        db.add(role)
        await db.flush()
        roles[role_code] = role

        grant_codes = list(permissions_map) if role_config["grants"] == "ALL" else role_config["grants"]
        for is_granted, codes in ((True, grant_codes), (False, role_config["denies"])):
            for code in codes:
                if code not in permissions_map:
                    log.warning(f"Permission '{code}' not found for role '{role_code}'")
                    continue
                db.add(RolePermission(
                    role_id=role.id,
                    permission_id=permissions_map[code].id,
                    is_granted=is_granted,
                    grant_reason="default seed",
                ))
        log.info(f"Created role '{role_code}' with {len(grant_codes)} grants and {len(role_config['denies'])} denies")

    await db.flush()

    resolver = RoleHierarchyResolver(db)
    for role_code, role_config in DEFAULT_ROLES.items():
        parent = role_config["parent"]
        if parent:
            await resolver.set_parent(roles[role_code].id, roles[parent].id, role_config.get("inherit", True))

    log.info("Default roles created successfully")


async def promote_admin(db: AsyncSession, email: str) -> None:
    user = await db.scalar(select(User).where(User.email == email))
    if user is None:
        log.warning(f"No user with email {email}; sign in once before promoting")
        return
    user.is_admin = True
    log.info(f"User {email} is now an admin")


async def main(admin_email: str | None = None):
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)
            if admin_email:
                await promote_admin(db, admin_email)
            await db.commit()

            log.info("Permission seeding completed successfully!")
            log.info("Default roles:")
            for role_code, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_code}: {role_config['name']} (level {role_config['level']})")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed default permissions and roles")
    parser.add_argument("--admin-email", help="Promote this existing user to admin")
    args = parser.parse_args()
    asyncio.run(main(args.admin_email))
