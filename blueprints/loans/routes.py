from flask import jsonify, request
from . import loans_bp
from services.loan_service import LoanService
from utils.db_helpers import get_user_id
from utils.errors import ValidationError


def _loan_response(loan, stale=False, status=200):
    body = loan.to_dict()
    if stale:
        body['stale_simulation'] = True
    response = jsonify(body)
    response.status_code = status
    response.headers['ETag'] = LoanService.etag(loan)
    return response


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


@loans_bp.route('', methods=['GET'])
def list_loans():
    """List loans, optionally filtered with ``?is_closed=true|false``"""
    is_closed = request.args.get('is_closed')
    if is_closed is not None:
        if is_closed.lower() not in ('true', 'false'):
            raise ValidationError('is_closed must be true or false')
        is_closed = is_closed.lower() == 'true'

    return jsonify(LoanService.list_loans(
        get_user_id(),
        is_closed=is_closed,
        page=request.args.get('page', 1, type=int),
        page_size=request.args.get('page_size', 20, type=int),
        sort=request.args.get('sort', 'created_at'),
        order=request.args.get('order', 'desc'),
    ))


@loans_bp.route('', methods=['POST'])
def create_loan():
    loan, stale = LoanService.create_loan(get_user_id(), _json_body())
    return _loan_response(loan, stale, status=201)


@loans_bp.route('/<int:loan_id>', methods=['GET'])
def get_loan(loan_id):
    return _loan_response(LoanService.get_loan(get_user_id(), loan_id))


@loans_bp.route('/<int:loan_id>', methods=['PUT'])
def update_loan(loan_id):
    loan, stale = LoanService.update_loan(get_user_id(), loan_id, _json_body(),
                                          expected_etag=request.headers.get('If-Match'))
    return _loan_response(loan, stale)


@loans_bp.route('/<int:loan_id>', methods=['PATCH'])
def patch_loan(loan_id):
    loan, stale = LoanService.patch_loan(get_user_id(), loan_id, _json_body(),
                                         expected_etag=request.headers.get('If-Match'))
    return _loan_response(loan, stale)


@loans_bp.route('/<int:loan_id>/close', methods=['POST'])
def close_loan(loan_id):
    data = request.get_json(silent=True) or {}
    loan, stale = LoanService.close_loan(get_user_id(), loan_id, data.get('closed_month'))
    return _loan_response(loan, stale)


@loans_bp.route('/<int:loan_id>', methods=['DELETE'])
def delete_loan(loan_id):
    stale = LoanService.delete_loan(get_user_id(), loan_id)
    return jsonify({'deleted': True, 'stale_simulation': stale})
