from flask import jsonify, request
from . import execution_logs_bp
from services.execution_log_service import ExecutionLogService
from utils.db_helpers import get_user_id
from utils.errors import ValidationError


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


@execution_logs_bp.route('', methods=['GET'])
def list_logs():
    """Filter with loan_id, month_start, payment_status, overpayment_status"""
    return jsonify(ExecutionLogService.list_logs(
        get_user_id(),
        loan_id=request.args.get('loan_id', type=int),
        month=request.args.get('month_start'),
        payment_status=request.args.get('payment_status'),
        overpayment_status=request.args.get('overpayment_status'),
        page=request.args.get('page', 1, type=int),
        page_size=request.args.get('page_size', 20, type=int),
        order=request.args.get('order', 'desc'),
    ))


@execution_logs_bp.route('', methods=['POST'])
def create_log():
    log = ExecutionLogService.create_log(get_user_id(), _json_body())
    return jsonify(log.to_dict()), 201


@execution_logs_bp.route('/<int:log_id>', methods=['PATCH'])
def patch_log(log_id):
    log = ExecutionLogService.patch_log(get_user_id(), log_id, _json_body())
    return jsonify(log.to_dict())
