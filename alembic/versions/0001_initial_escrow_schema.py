"""initial escrow schema: trades, events, rooms, vaults, audit"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial_escrow_schema"
down_revision = None
branch_labels = None
depends_on = None

TOKEN_AMOUNT = sa.Numeric(38, 18)

ESCROW_STATUS = sa.Enum(
    "DRAFT",
    "AWAITING_DETAILS",
    "AWAITING_DEPOSIT",
    "DEPOSITED",
    "IN_FIAT_TRANSFER",
    "READY_TO_RELEASE",
    "DISPUTED",
    "COMPLETED",
    "REFUNDED",
    name="escrowstatus",
)
DETAILS_STEP = sa.Enum(
    "ROLE_SELECTION",
    "CHAIN_SELECTION",
    "TOKEN_SELECTION",
    "AMOUNT_ENTRY",
    "BUYER_ADDRESS",
    "SELLER_ADDRESS",
    "DEAL_SUMMARY",
    name="tradedetailsstep",
)
DIRECTION = sa.Enum("RELEASE", "REFUND", name="settlementdirection")
ROOM_STATUS = sa.Enum("AVAILABLE", "ASSIGNED", "COMPLETED", name="roomstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _flag(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false())


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("trade_id", sa.String(length=32), nullable=True),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_trade_id", "audit_logs", ["trade_id"])

    op.create_table(
        "trade_counters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=32), nullable=False, unique=True),
        sa.Column("seq", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "group_rooms",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("group_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("status", ROOM_STATUS, nullable=False),
        sa.Column("assigned_trade_id", sa.String(length=32), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fee_percent", sa.Numeric(8, 4), nullable=True),
        sa.Column("contracts", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_group_rooms_status", "group_rooms", ["status"])
    op.create_index("ix_group_rooms_assigned_trade_id", "group_rooms", ["assigned_trade_id"])

    op.create_table(
        "vault_contracts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("token", sa.String(length=16), nullable=False),
        sa.Column("network", sa.String(length=16), nullable=False),
        sa.Column("address", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("address", name="uq_vault_contracts_address"),
    )
    op.create_index("ix_vault_contracts_token_network", "vault_contracts", ["token", "network"])

    op.create_table(
        "escrow_trades",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trade_id", sa.String(length=32), nullable=False),
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("creator_id", sa.BigInteger(), nullable=False),
        sa.Column("creator_username", sa.String(length=64), nullable=True),
        sa.Column("buyer_id", sa.BigInteger(), nullable=True),
        sa.Column("buyer_username", sa.String(length=64), nullable=True),
        sa.Column("seller_id", sa.BigInteger(), nullable=True),
        sa.Column("seller_username", sa.String(length=64), nullable=True),
        sa.Column("allowed_user_ids", sa.JSON(), nullable=False),
        sa.Column("allowed_usernames", sa.JSON(), nullable=False),
        sa.Column("joined_user_ids", sa.JSON(), nullable=False),
        sa.Column("status", ESCROW_STATUS, nullable=False),
        sa.Column("trade_details_step", DETAILS_STEP, nullable=True),
        sa.Column("chain", sa.String(length=16), nullable=True),
        sa.Column("token", sa.String(length=16), nullable=True),
        sa.Column("quantity", TOKEN_AMOUNT, nullable=True),
        sa.Column("rate", sa.Numeric(18, 4), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("buyer_address", sa.String(length=128), nullable=True),
        sa.Column("seller_address", sa.String(length=128), nullable=True),
        sa.Column("contract_address", sa.String(length=128), nullable=True),
        _flag("buyer_approved"),
        _flag("seller_approved"),
        sa.Column("fee_rate", sa.Numeric(8, 4), nullable=False),
        sa.Column("network_fee", sa.Numeric(20, 8), nullable=False),
        _flag("has_bio_tag"),
        sa.Column("deposit_amount", TOKEN_AMOUNT, nullable=False, server_default="0"),
        sa.Column("confirmed_amount", TOKEN_AMOUNT, nullable=False, server_default="0"),
        sa.Column("accumulated_deposit_amount", TOKEN_AMOUNT, nullable=False, server_default="0"),
        sa.Column("accumulated_deposit_amount_wei", sa.String(length=80), nullable=False, server_default="0"),
        sa.Column("total_deposited_amount", TOKEN_AMOUNT, nullable=False, server_default="0"),
        sa.Column("total_settled_amount", TOKEN_AMOUNT, nullable=False, server_default="0"),
        sa.Column("transaction_hash", sa.String(length=128), nullable=True),
        sa.Column("partial_transaction_hashes", sa.JSON(), nullable=False),
        sa.Column("deposit_from_address", sa.String(length=128), nullable=True),
        sa.Column("last_checked_block", sa.BigInteger(), nullable=False, server_default="0"),
        _flag("buyer_confirmed_release"),
        _flag("seller_confirmed_release"),
        _flag("admin_confirmed_release"),
        _flag("buyer_confirmed_refund"),
        _flag("seller_confirmed_refund"),
        _flag("admin_confirmed_refund"),
        sa.Column("pending_release_amount", TOKEN_AMOUNT, nullable=True),
        sa.Column("pending_refund_amount", TOKEN_AMOUNT, nullable=True),
        sa.Column("release_prompt_id", sa.String(length=64), nullable=True),
        sa.Column("refund_prompt_id", sa.String(length=64), nullable=True),
        sa.Column("settlement_in_flight", DIRECTION, nullable=True),
        sa.Column("release_transaction_hash", sa.String(length=128), nullable=True),
        sa.Column("refund_transaction_hash", sa.String(length=128), nullable=True),
        sa.Column("release_transaction_hashes", sa.JSON(), nullable=False),
        sa.Column("refund_transaction_hashes", sa.JSON(), nullable=False),
        _flag("buyer_sent_fiat"),
        sa.Column("seller_received_fiat", sa.Boolean(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("accumulated_deposit_amount >= 0", name="ck_trade_balance_non_negative"),
        sa.CheckConstraint(
            "buyer_id IS NULL OR seller_id IS NULL OR buyer_id <> seller_id",
            name="ck_trade_no_self_dealing",
        ),
    )
    op.create_index("ix_escrow_trades_trade_id", "escrow_trades", ["trade_id"], unique=True)
    op.create_index("ix_trade_status", "escrow_trades", ["status"])
    op.create_index("ix_trade_group", "escrow_trades", ["group_id"])

    op.create_table(
        "escrow_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "trade_pk",
            sa.Integer(),
            sa.ForeignKey("escrow_trades.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_escrow_events_trade_pk", "escrow_events", ["trade_pk"])
    op.create_index("ix_escrow_events_idempotency_key", "escrow_events", ["idempotency_key"])


def downgrade() -> None:
    op.drop_index("ix_escrow_events_idempotency_key", table_name="escrow_events")
    op.drop_index("ix_escrow_events_trade_pk", table_name="escrow_events")
    op.drop_table("escrow_events")
    op.drop_index("ix_trade_group", table_name="escrow_trades")
    op.drop_index("ix_trade_status", table_name="escrow_trades")
    op.drop_index("ix_escrow_trades_trade_id", table_name="escrow_trades")
    op.drop_table("escrow_trades")
    op.drop_index("ix_vault_contracts_token_network", table_name="vault_contracts")
    op.drop_table("vault_contracts")
    op.drop_index("ix_group_rooms_assigned_trade_id", table_name="group_rooms")
    op.drop_index("ix_group_rooms_status", table_name="group_rooms")
    op.drop_table("group_rooms")
    op.drop_table("trade_counters")
    op.drop_index("ix_audit_logs_trade_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    for enum in (ROOM_STATUS, DIRECTION, DETAILS_STEP, ESCROW_STATUS):
        enum.drop(op.get_bind(), checkfirst=True)
