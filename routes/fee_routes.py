from flask import Blueprint, jsonify

from utils.auth import current_profile, requires, school_scope
from utils.fee_assignments import migrate_plan_categories
from utils.roles import Capability

fee_bp = Blueprint('fees', __name__, url_prefix='/school/fees')


@fee_bp.route('/payment-plans/migrate-categories', methods=['POST'])
@requires(Capability.MIGRATE_PAYMENT_PLANS)
def migrate_categories():
    school_id = school_scope(current_profile())
    summary = migrate_plan_categories(school_id)
    return jsonify({"ok": True, **summary})
