"""tender_markup_schema

Revision ID: 001_tender_markup_schema
Revises:
Create Date: 2026-10-16

Creates the tables read and written by the markup engine and the version
matcher:
- roles, users
- markup_parameters (+ seed of the standard parameter keys)
- markup_tactics (JSONB step sequences per BOQ item type)
- tenders, tender_markup_percentage, tender_pricing_distribution
- subcontract_growth_exclusions
- client_positions, boq_items

All DDL is guarded by existence checks so the migration is idempotent and
safe to run after Base.metadata.create_all().
"""
import logging
import uuid
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import UUID, JSONB

revision = '001_tender_markup_schema'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

# key, label, default value (%)
_STANDARD_PARAMETERS = [
    ('mechanization_service', 'Служба механизации', 5),
    ('mbp_gsm', 'МБП+ГСМ', 5),
    ('warranty_period', 'Гарантийный период', 5),
    ('works_16_markup', 'Работы 1,6', 60),
    ('works_cost_growth', 'Рост стоимости работ', 10),
    ('material_cost_growth', 'Рост стоимости материалов', 10),
    ('subcontract_works_cost_growth', 'Рост работ субподряда', 10),
    ('subcontract_materials_cost_growth', 'Рост материалов субподряда', 10),
    ('contingency_costs', 'Непредвиденные', 3),
    ('overhead_own_forces', 'ООЗ собств. силы', 10),
    ('overhead_subcontract', 'ООЗ субподряд', 10),
    ('general_costs_without_subcontract', 'ОФЗ (без субподряда)', 20),
    ('profit_own_forces', 'Прибыль собств. силы', 10),
    ('profit_subcontract', 'Прибыль субподряд', 16),
]

_TARGET_COLUMNS = [
    ('basic_material', 'material', 'material'),
    ('auxiliary_material', 'material', 'material'),
    ('component_material', None, None),
    ('subcontract_basic_material', None, None),
    ('subcontract_auxiliary_material', None, None),
    ('work', 'work', 'work'),
    ('component_work', None, None),
]


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _uuid_pk():
    return sa.Column('id', UUID(as_uuid=False), primary_key=True)


def _create(conn, name: str, *columns) -> None:
    if _table_exists(conn, name):
        logger.info(f"Table {name} already exists — skipping create")
        return
    op.create_table(name, *columns)
    logger.info(f"Created table: {name}")


def upgrade() -> None:
    conn = op.get_bind()

    # ── auth ──────────────────────────────────────────────────────────────────
    _create(
        conn, 'roles',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(50), nullable=False, unique=True),
    )
    _create(
        conn, 'users',
        _uuid_pk(),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('role_id', sa.Integer, sa.ForeignKey('roles.id'), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── markup parameters & tactics ───────────────────────────────────────────
    seed_parameters = not _table_exists(conn, 'markup_parameters')
    _create(
        conn, 'markup_parameters',
        _uuid_pk(),
        sa.Column('key', sa.String(100), nullable=False, unique=True),
        sa.Column('label', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('order_num', sa.Integer, server_default='0'),
        sa.Column('default_value', sa.Numeric(8, 4), server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    if seed_parameters:
        table = sa.table(
            'markup_parameters',
            sa.column('id', UUID(as_uuid=False)),
            sa.column('key', sa.String),
            sa.column('label', sa.String),
            sa.column('order_num', sa.Integer),
            sa.column('default_value', sa.Numeric),
        )
        op.bulk_insert(table, [
            {'id': str(uuid.uuid4()), 'key': key, 'label': label, 'order_num': n, 'default_value': value}
            for n, (key, label, value) in enumerate(_STANDARD_PARAMETERS, start=1)
        ])
        logger.info(f"Seeded {len(_STANDARD_PARAMETERS)} markup parameters")

    _create(
        conn, 'markup_tactics',
        _uuid_pk(),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('sequences', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('base_costs', JSONB, nullable=True, server_default=sa.text("'{}'::jsonb")),
        sa.Column('is_global', sa.Boolean, server_default=sa.false()),
        sa.Column('user_id', UUID(as_uuid=False), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── tenders ───────────────────────────────────────────────────────────────
    _create(
        conn, 'tenders',
        _uuid_pk(),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('tender_number', sa.String(100), nullable=False),
        sa.Column('client_name', sa.String(255), nullable=True),
        sa.Column('version', sa.Integer, server_default='1'),
        sa.Column('markup_tactic_id', UUID(as_uuid=False), sa.ForeignKey('markup_tactics.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    _create(
        conn, 'tender_markup_percentage',
        _uuid_pk(),
        sa.Column('tender_id', UUID(as_uuid=False), sa.ForeignKey('tenders.id', ondelete='CASCADE'), index=True),
        sa.Column('markup_parameter_id', UUID(as_uuid=False), sa.ForeignKey('markup_parameters.id')),
        sa.Column('value', sa.Numeric(8, 4), nullable=False),
        sa.UniqueConstraint('tender_id', 'markup_parameter_id', name='uq_tender_markup_parameter'),
    )

    target_columns = []
    for category, base_default, markup_default in _TARGET_COLUMNS:
        for part, default in (('base', base_default), ('markup', markup_default)):
            target_columns.append(sa.Column(
                f'{category}_{part}_target', sa.String(10),
                nullable=default is None, server_default=default,
            ))
    _create(
        conn, 'tender_pricing_distribution',
        _uuid_pk(),
        sa.Column('tender_id', UUID(as_uuid=False), sa.ForeignKey('tenders.id', ondelete='CASCADE'), unique=True),
        sa.Column('markup_tactic_id', UUID(as_uuid=False), sa.ForeignKey('markup_tactics.id'), nullable=True),
        *target_columns,
    )
    _create(
        conn, 'subcontract_growth_exclusions',
        _uuid_pk(),
        sa.Column('tender_id', UUID(as_uuid=False), sa.ForeignKey('tenders.id', ondelete='CASCADE'), index=True),
        sa.Column('detail_cost_category_id', UUID(as_uuid=False), nullable=False),
        sa.Column('exclusion_type', sa.String(20), nullable=False),
        sa.UniqueConstraint('tender_id', 'detail_cost_category_id', 'exclusion_type', name='uq_growth_exclusion'),
    )

    # ── positions & BOQ ───────────────────────────────────────────────────────
    _create(
        conn, 'client_positions',
        _uuid_pk(),
        sa.Column('tender_id', UUID(as_uuid=False), sa.ForeignKey('tenders.id', ondelete='CASCADE')),
        sa.Column('position_number', sa.Numeric(12, 2), nullable=False),
        sa.Column('item_no', sa.String(100), nullable=True),
        sa.Column('work_name', sa.Text, nullable=False),
        sa.Column('unit_code', sa.String(20), nullable=True),
        sa.Column('volume', sa.Numeric(18, 4), nullable=True),
        sa.Column('client_note', sa.Text, nullable=True),
        sa.Column('hierarchy_level', sa.Integer, server_default='0'),
        sa.Column('is_additional', sa.Boolean, server_default=sa.false()),
        sa.Column('parent_position_id', UUID(as_uuid=False),
                  sa.ForeignKey('client_positions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('total_commercial_material', sa.Numeric(18, 2), nullable=True),
        sa.Column('total_commercial_work', sa.Numeric(18, 2), nullable=True),
        sa.Index('ix_client_positions_tender_number', 'tender_id', 'position_number'),
    )
    _create(
        conn, 'boq_items',
        _uuid_pk(),
        sa.Column('tender_id', UUID(as_uuid=False), sa.ForeignKey('tenders.id', ondelete='CASCADE'), index=True),
        sa.Column('client_position_id', UUID(as_uuid=False),
                  sa.ForeignKey('client_positions.id', ondelete='CASCADE')),
        sa.Column('sort_number', sa.Integer, server_default='0'),
        sa.Column('boq_item_type', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=True),
        sa.Column('unit_rate', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('detail_cost_category_id', UUID(as_uuid=False), nullable=True),
        sa.Column('commercial_markup', sa.Numeric(12, 6), nullable=True),
        sa.Column('total_commercial_material_cost', sa.Numeric(18, 2), nullable=True),
        sa.Column('total_commercial_work_cost', sa.Numeric(18, 2), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    conn = op.get_bind()
    for name in [
        'boq_items', 'client_positions', 'subcontract_growth_exclusions',
        'tender_pricing_distribution', 'tender_markup_percentage', 'tenders',
        'markup_tactics', 'markup_parameters', 'users', 'roles',
    ]:
        if _table_exists(conn, name):
            op.drop_table(name)
