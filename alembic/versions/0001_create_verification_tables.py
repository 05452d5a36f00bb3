"""Create solana_program_builds and verified_programs tables

Revision ID: 0001
Revises: 
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per program: parameters of the latest build request
    op.create_table('solana_program_builds',
        sa.Column('program_id', sa.String(length=64), nullable=False),
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('repository', sa.String(length=512), nullable=False),
        sa.Column('commit_hash', sa.String(length=64), nullable=True),
        sa.Column('lib_name', sa.String(length=128), nullable=True),
        sa.Column('base_docker_image', sa.String(length=256), nullable=True),
        sa.Column('mount_path', sa.String(length=256), nullable=True),
        sa.Column('cargo_args', sa.JSON(), nullable=False),
        sa.Column('bpf_flag', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempt_id', sa.String(length=36), nullable=False),
        sa.Column('last_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('program_id')
    )
    op.create_index(op.f('ix_solana_program_builds_created_at'), 'solana_program_builds', ['created_at'], unique=False)

    # Latest verification outcome per program
    op.create_table('verified_programs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('program_id', sa.String(length=64), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False),
        sa.Column('on_chain_hash', sa.String(length=64), nullable=False),
        sa.Column('executable_hash', sa.String(length=64), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['program_id'], ['solana_program_builds.program_id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_verified_programs_program_id'), 'verified_programs', ['program_id'], unique=True)
    op.create_index(op.f('ix_verified_programs_verified_at'), 'verified_programs', ['verified_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_verified_programs_verified_at'), table_name='verified_programs')
    op.drop_index(op.f('ix_verified_programs_program_id'), table_name='verified_programs')
    op.drop_table('verified_programs')

    op.drop_index(op.f('ix_solana_program_builds_created_at'), table_name='solana_program_builds')
    op.drop_table('solana_program_builds')
