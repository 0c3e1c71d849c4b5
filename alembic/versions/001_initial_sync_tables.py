"""Initial sync tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Row last update time'),
    ]


def upgrade() -> None:
    op.create_table('key_blocks',
        sa.Column('hash', sa.String(length=128), nullable=False, comment='Key block hash'),
        sa.Column('height', sa.BigInteger(), nullable=False, comment='Generation height'),
        sa.Column('prev_hash', sa.String(length=128), nullable=True, comment='Previous block hash'),
        sa.Column('prev_key_hash', sa.String(length=128), nullable=True, comment='Previous key block hash'),
        sa.Column('state_hash', sa.String(length=128), nullable=True),
        sa.Column('beneficiary', sa.String(length=128), nullable=True),
        sa.Column('miner', sa.String(length=128), nullable=True),
        sa.Column('time', sa.BigInteger(), nullable=True, comment='Block time in ms'),
        sa.Column('transactions_count', sa.Integer(), nullable=False),
        sa.Column('micro_blocks_count', sa.Integer(), nullable=False),
        sa.Column('beneficiary_reward', sa.String(length=64), nullable=True, comment='Reward as decimal string'),
        sa.Column('flags', sa.String(length=64), nullable=True),
        sa.Column('info', sa.String(length=128), nullable=True),
        sa.Column('nonce', sa.String(length=64), nullable=True, comment='Nonce as decimal string'),
        sa.Column('pow', _json(), nullable=True),
        sa.Column('target', sa.BigInteger(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('hash'),
        sa.UniqueConstraint('height')
    )
    op.create_index('idx_key_blocks_prev_key_hash', 'key_blocks', ['prev_key_hash'])

    op.create_table('micro_blocks',
        sa.Column('hash', sa.String(length=128), nullable=False, comment='Micro block hash'),
        sa.Column('height', sa.BigInteger(), nullable=False, comment='Generation height'),
        sa.Column('prev_hash', sa.String(length=128), nullable=True),
        sa.Column('prev_key_hash', sa.String(length=128), nullable=True, comment='Key block this micro block belongs to'),
        sa.Column('state_hash', sa.String(length=128), nullable=True),
        sa.Column('time', sa.BigInteger(), nullable=True, comment='Block time in ms'),
        sa.Column('transactions_count', sa.Integer(), nullable=False),
        sa.Column('flags', sa.String(length=64), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('gas', sa.BigInteger(), nullable=True),
        sa.Column('micro_block_index', sa.Integer(), nullable=True),
        sa.Column('pof_hash', sa.String(length=128), nullable=True),
        sa.Column('signature', sa.String(length=256), nullable=True),
        sa.Column('txs_hash', sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('hash')
    )
    op.create_index('idx_micro_blocks_height', 'micro_blocks', ['height'])
    op.create_index('idx_micro_blocks_prev_key_hash', 'micro_blocks', ['prev_key_hash'])

    op.create_table('txs',
        sa.Column('hash', sa.String(length=128), nullable=False, comment='Transaction hash'),
        sa.Column('block_hash', sa.String(length=128), nullable=False, comment='Micro block hash'),
        sa.Column('block_height', sa.BigInteger(), nullable=False, comment='Generation height'),
        sa.Column('micro_index', sa.BigInteger(), nullable=False, comment='Index within micro block'),
        sa.Column('micro_time', sa.BigInteger(), nullable=False, comment='Micro block time in ms'),
        sa.Column('type', sa.String(length=64), nullable=False, comment='Transaction type, e.g. SpendTx'),
        sa.Column('contract_id', sa.String(length=128), nullable=True),
        sa.Column('function', sa.String(length=128), nullable=True, comment='Called contract entrypoint'),
        sa.Column('caller_id', sa.String(length=128), nullable=True),
        sa.Column('sender_id', sa.String(length=128), nullable=True),
        sa.Column('recipient_id', sa.String(length=128), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True, comment='Decoded SpendTx payload'),
        sa.Column('signatures', _json(), nullable=True),
        sa.Column('encoded_tx', sa.Text(), nullable=True),
        sa.Column('raw', _json(), nullable=True, comment='Inner transaction body'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('data', _json(), nullable=True, comment='Decoded data per plugin'),
        sa.Column('logs', _json(), nullable=True, comment='Decoded logs per plugin'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('hash')
    )
    op.create_index('idx_txs_block_height', 'txs', ['block_height'])
    op.create_index('idx_txs_type', 'txs', ['type'])
    op.create_index('idx_txs_function', 'txs', ['function'])
    op.create_index('idx_txs_contract_id', 'txs', ['contract_id'])
    op.create_index('idx_txs_caller_id', 'txs', ['caller_id'])
    op.create_index('idx_txs_order', 'txs', ['block_height', 'micro_index', 'micro_time'])

    op.create_table('sync_state',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('last_synced_height', sa.BigInteger(), nullable=False, comment='Legacy frontier'),
        sa.Column('last_synced_hash', sa.String(length=128), nullable=True),
        sa.Column('tip_height', sa.BigInteger(), nullable=False, comment='Last seen chain tip'),
        sa.Column('is_bulk_mode', sa.Boolean(), nullable=False),
        sa.Column('backward_synced_height', sa.BigInteger(), nullable=True, comment='Next height the backfill will sync, 0 when complete'),
        sa.Column('live_synced_height', sa.BigInteger(), nullable=True, comment='Highest height persisted by the live tailer'),
        sa.Column('indexer_head_height', sa.BigInteger(), nullable=True, comment='Highest tip observed by the backward indexer'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('plugin_sync_state',
        sa.Column('plugin_name', sa.String(length=128), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, comment='Declared plugin version'),
        sa.Column('last_synced_height', sa.BigInteger(), nullable=False),
        sa.Column('backward_synced_height', sa.BigInteger(), nullable=True),
        sa.Column('live_synced_height', sa.BigInteger(), nullable=True),
        sa.Column('start_from_height', sa.BigInteger(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('plugin_name')
    )

    op.create_table('plugin_failed_transaction',
        sa.Column('plugin_name', sa.String(length=128), nullable=False),
        sa.Column('tx_hash', sa.String(length=128), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, comment='Plugin version at failure time'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_trace', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('plugin_name', 'tx_hash')
    )
    op.create_index('idx_plugin_failed_tx_plugin_version', 'plugin_failed_transaction', ['plugin_name', 'version'])


def downgrade() -> None:
    op.drop_index('idx_plugin_failed_tx_plugin_version', table_name='plugin_failed_transaction')
    op.drop_table('plugin_failed_transaction')
    op.drop_table('plugin_sync_state')
    op.drop_table('sync_state')

    for index in ('idx_txs_order', 'idx_txs_caller_id', 'idx_txs_contract_id', 'idx_txs_function', 'idx_txs_type', 'idx_txs_block_height'):
        op.drop_index(index, table_name='txs')
    op.drop_table('txs')

    op.drop_index('idx_micro_blocks_prev_key_hash', table_name='micro_blocks')
    op.drop_index('idx_micro_blocks_height', table_name='micro_blocks')
    op.drop_table('micro_blocks')

    op.drop_index('idx_key_blocks_prev_key_hash', table_name='key_blocks')
    op.drop_table('key_blocks')
