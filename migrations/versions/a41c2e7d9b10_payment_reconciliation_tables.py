"""payment reconciliation and fee rate tables

Revision ID: a41c2e7d9b10
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a41c2e7d9b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'schools',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('verification_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('school_id', sa.String(length=36), sa.ForeignKey('schools.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'])
    op.create_index('ix_profiles_school_id', 'profiles', ['school_id'])

    op.create_table(
        'parents',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('profile_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False, unique=True),
        sa.Column('phone', sa.String(length=20), nullable=True),
    )
    op.create_table(
        'students',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('school_id', sa.String(length=36), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('student_number', sa.String(length=50), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('school_id', 'student_number', name='uq_students_school_number'),
    )
    op.create_index('ix_students_school_id', 'students', ['school_id'])
    op.create_table(
        'parent_students',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('parent_id', sa.String(length=36), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.UniqueConstraint('parent_id', 'student_id', name='uq_parent_student'),
    )
    op.create_index('ix_parent_students_parent_id', 'parent_students', ['parent_id'])
    op.create_index('ix_parent_students_student_id', 'parent_students', ['student_id'])

    op.create_table(
        'fee_categories',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('school_id', sa.String(length=36), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
    )
    op.create_index('ix_fee_categories_school_id', 'fee_categories', ['school_id'])
    op.create_table(
        'fee_structures',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('school_id', sa.String(length=36), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('academic_year_id', sa.String(length=36), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('fee_items', sa.JSON(), nullable=False),
    )
    op.create_index('ix_fee_structures_school_id', 'fee_structures', ['school_id'])
    op.create_index('ix_fee_structures_academic_year_id', 'fee_structures', ['academic_year_id'])
    op.create_table(
        'payment_plans',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('structure_id', sa.String(length=36), sa.ForeignKey('fee_structures.id'), nullable=False),
        sa.Column('fee_category_id', sa.String(length=36), sa.ForeignKey('fee_categories.id'), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False, server_default='installments'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('installments', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payment_plans_structure_id', 'payment_plans', ['structure_id'])
    op.create_index('ix_payment_plans_fee_category_id', 'payment_plans', ['fee_category_id'])
    op.create_table(
        'student_fee_assignments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('structure_id', sa.String(length=36), sa.ForeignKey('fee_structures.id'), nullable=False),
        sa.Column('payment_plan_id', sa.String(length=36), sa.ForeignKey('payment_plans.id'), nullable=True),
        sa.Column('academic_year_id', sa.String(length=36), nullable=True),
        sa.Column('total_due', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('paid_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('student_id', 'structure_id', name='uq_assignment_student_structure'),
    )
    op.create_index('ix_student_fee_assignments_student_id', 'student_fee_assignments', ['student_id'])
    op.create_index('ix_student_fee_assignments_structure_id', 'student_fee_assignments', ['structure_id'])
    op.create_index('ix_student_fee_assignments_academic_year_id', 'student_fee_assignments', ['academic_year_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('parent_id', sa.String(length=36), sa.ForeignKey('parents.id'), nullable=True),
        sa.Column('payment_plan_id', sa.String(length=36), sa.ForeignKey('payment_plans.id'), nullable=True),
        sa.Column('fee_structure_id', sa.String(length=36), sa.ForeignKey('fee_structures.id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='mobile_money'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('transaction_reference', sa.String(length=64), nullable=True),
        sa.Column('third_party_conversation_id', sa.String(length=64), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('installment_number', sa.Integer(), nullable=True),
        sa.Column('installment_label', sa.String(length=120), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payments_student_id', 'payments', ['student_id'])
    op.create_index('ix_payments_parent_id', 'payments', ['parent_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_transaction_reference', 'payments', ['transaction_reference'])
    op.create_index('ix_payments_third_party_conversation_id', 'payments', ['third_party_conversation_id'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.String(length=36), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('student_fee_assignment_id', sa.String(length=36), sa.ForeignKey('student_fee_assignments.id'), nullable=True),
        sa.Column('payment_plan_id', sa.String(length=36), sa.ForeignKey('payment_plans.id'), nullable=True),
        sa.Column('installment_number', sa.Integer(), nullable=True),
        sa.Column('installment_label', sa.String(length=120), nullable=True),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False),
        sa.Column('transaction_status', sa.String(length=20), nullable=False, server_default='completed'),
        sa.Column('gateway_transaction_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_id', name='uq_payment_transactions_payment'),
    )
    op.create_index(
        'ix_payment_transactions_assignment_plan',
        'payment_transactions',
        ['student_fee_assignment_id', 'payment_plan_id'],
    )

    op.create_table(
        'payment_fee_rates',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('school_id', sa.String(length=36), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False),
        sa.Column('proposed_by_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('proposed_by_role', sa.String(length=32), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('school_approved_by', sa.String(length=36), nullable=True),
        sa.Column('school_approved_at', sa.DateTime(), nullable=True),
        sa.Column('admin_approved_by', sa.String(length=36), nullable=True),
        sa.Column('admin_approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejected_by', sa.String(length=36), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_until', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('pending_slot', sa.String(length=36), nullable=True),
        sa.Column('active_slot', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('pending_slot', name='uq_payment_fee_rates_pending_slot'),
        sa.UniqueConstraint('active_slot', name='uq_payment_fee_rates_active_slot'),
    )
    op.create_index('ix_payment_fee_rates_school_id', 'payment_fee_rates', ['school_id'])
    op.create_index('ix_payment_fee_rates_status', 'payment_fee_rates', ['status'])
    op.create_table(
        'payment_fee_rate_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('rate_id', sa.String(length=36), sa.ForeignKey('payment_fee_rates.id'), nullable=False),
        sa.Column('school_id', sa.String(length=36), nullable=False),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False),
        sa.Column('changed_by', sa.String(length=36), nullable=True),
        sa.Column('change_type', sa.String(length=24), nullable=False),
        sa.Column('change_details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payment_fee_rate_history_rate_id', 'payment_fee_rate_history', ['rate_id'])
    op.create_index('ix_payment_fee_rate_history_school_id', 'payment_fee_rate_history', ['school_id'])
    op.create_table(
        'transaction_fee_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.String(length=36), sa.ForeignKey('payments.id'), nullable=False, unique=True),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('school_id', sa.String(length=36), nullable=False),
        sa.Column('fee_rate_id', sa.String(length=36), sa.ForeignKey('payment_fee_rates.id'), nullable=True),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('base_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('fee_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_transaction_fee_snapshots_student_id', 'transaction_fee_snapshots', ['student_id'])
    op.create_index('ix_transaction_fee_snapshots_school_id', 'transaction_fee_snapshots', ['school_id'])


def downgrade():
    op.drop_table('transaction_fee_snapshots')
    op.drop_table('payment_fee_rate_history')
    op.drop_table('payment_fee_rates')
    op.drop_table('payment_transactions')
    op.drop_table('payments')
    op.drop_table('student_fee_assignments')
    op.drop_table('payment_plans')
    op.drop_table('fee_structures')
    op.drop_table('fee_categories')
    op.drop_table('parent_students')
    op.drop_table('students')
    op.drop_table('parents')
    op.drop_table('profiles')
    op.drop_table('schools')
