"""Create identity verification and device trust tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Code store (otp_records), profile mirror, PIN gate and salt store, and the
WebAuthn credential tables.
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "otp_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(320), nullable=False),
        sa.Column("code_hash", sa.String(128), nullable=False),
        sa.Column("legacy_code", sa.String(16), nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("consumed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("client_ip", sa.String(64), nullable=True),
    )
    op.create_index("idx_otp_records_identifier_created", "otp_records", ["identifier", "created_at"])

    op.create_table(
        "profiles",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("phone", sa.String(32), unique=True, nullable=True),
        sa.Column("email", sa.String(320), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "trusted_factors",
        sa.Column("auth_user_id", sa.String(64), primary_key=True),
        sa.Column("factor_type", sa.String(16), nullable=False, server_default="pin"),
        sa.Column("pin_hash", sa.String(255), nullable=True),
        sa.Column("failed_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("locked_until", sa.DateTime, nullable=True),
        sa.Column("last_used_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "pin_credentials",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("salt_b64", sa.String(64), nullable=False),
        sa.Column("kdf", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "webauthn_credentials",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("credential_id", sa.String(512), nullable=False),
        sa.Column("public_key", sa.LargeBinary, nullable=False),
        sa.Column("counter", sa.Integer, nullable=False, server_default="0"),
        sa.Column("device_type", sa.String(32), nullable=True),
        sa.Column("backed_up", sa.Boolean, nullable=True),
        sa.Column("transports", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("last_used_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_webauthn_credentials_user_id", "webauthn_credentials", ["user_id"])
    op.create_index(
        "ix_webauthn_credentials_credential_id", "webauthn_credentials", ["credential_id"], unique=True
    )

    op.create_table(
        "user_security",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("passkey_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("passkey_cred_ids", sa.JSON, nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_security")
    op.drop_index("ix_webauthn_credentials_credential_id", table_name="webauthn_credentials")
    op.drop_index("ix_webauthn_credentials_user_id", table_name="webauthn_credentials")
    op.drop_table("webauthn_credentials")
    op.drop_table("pin_credentials")
    op.drop_table("trusted_factors")
    op.drop_table("profiles")
    op.drop_index("idx_otp_records_identifier_created", table_name="otp_records")
    op.drop_table("otp_records")
