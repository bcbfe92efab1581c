"""
Role, Policy, UserPermissions and UserPoliciesDenorm tables for the SQL backend.

The normalized graph is:
- roles <-> policies            (role_policies)
- user_permissions <-> roles    (user_permission_roles)
- user_permissions <-> policies (user_permission_policies, direct grants)

user_policies_denorm flattens that graph into one row per
(subject, policy map key, granting role or NULL) and is the only table the
access check reads.
"""
from sqlalchemy import String, Integer, ForeignKey, Table, Column, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iam.core.database.base import Base, TimestampMixin, generate_ulid


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

role_policies = Table(
    "role_policies",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("policy_id", String(26), ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True),
)

user_permission_roles = Table(
    "user_permission_roles",
    Base.metadata,
    Column("user_permissions_id", String(26), ForeignKey("user_permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

user_permission_policies = Table(
    "user_permission_policies",
    Base.metadata,
    Column("user_permissions_id", String(26), ForeignKey("user_permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("policy_id", String(26), ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Policy(Base, TimestampMixin):
    """
    A single (resource, action) permission. Never updated once created.
    """
    __tablename__ = "policies"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_policies_resource_action"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    resource: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<Policy(id={self.id}, resource={self.resource!r}, action={self.action!r})>"


class Role(Base, TimestampMixin):
    """
    Named bundle of policies. The name is also the role key of denormalized rows.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    # Bumped on every save of the policy list; saves compare-and-swap on it
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    policies: Mapped[list["Policy"]] = relationship(
        "Policy",
        secondary=role_policies,
        lazy="selectin",
        order_by="Policy.id",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r})>"


class UserPermissions(Base, TimestampMixin):
    """
    Roles and direct policies attached to one subject.
    """
    __tablename__ = "user_permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    subject: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=user_permission_roles,
        lazy="selectin",
        order_by="Role.id",
    )
    policies: Mapped[list["Policy"]] = relationship(
        "Policy",
        secondary=user_permission_policies,
        lazy="selectin",
        order_by="Policy.id",
    )

    def __repr__(self) -> str:
        return f"<UserPermissions(id={self.id}, subject={self.subject!r})>"


class UserPoliciesDenorm(Base):
    """
    Flattened grant: `subject` holds `policy_map_key` because of `role_key`
    (NULL for a directly attached policy).
    """
    __tablename__ = "user_policies_denorm"
    __table_args__ = (
        Index("ix_user_policies_denorm_subject_key", "subject", "policy_map_key"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_map_key: Mapped[str] = mapped_column(String(512), nullable=False)
    role_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    def __repr__(self) -> str:
        return (
            f"<UserPoliciesDenorm(subject={self.subject!r}, policy_map_key={self.policy_map_key!r}, "
            f"role_key={self.role_key!r})>"
        )
