from flask import jsonify, request
from . import simulations_bp
from services.allocation_service import list_strategies
from services.simulation_service import SimulationService
from utils.db_helpers import get_user_id
from utils.errors import NotFoundError, PreconditionError, ValidationError


@simulations_bp.route('/strategies', methods=['GET'])
def strategies():
    return jsonify({'items': list_strategies()})


@simulations_bp.route('/simulations', methods=['GET'])
def list_simulations():
    return jsonify(SimulationService.list_simulations(
        get_user_id(),
        status=request.args.get('status'),
        page=request.args.get('page', 1, type=int),
        page_size=request.args.get('page_size', 20, type=int),
    ))


@simulations_bp.route('/simulations', methods=['POST'])
def queue_simulation():
    """Queue a simulation; the client polls GET /simulations/<id> until it settles"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    result = SimulationService.queue_simulation(get_user_id(), data)
    return jsonify(result), 202


@simulations_bp.route('/simulations/active', methods=['GET'])
def active_simulation():
    simulation = SimulationService.get_active_simulation(get_user_id())
    if simulation is None:
        raise NotFoundError('No active simulation', code='ACTIVE_SIMULATION_NOT_FOUND')
    return jsonify(SimulationService.get_simulation_detail(get_user_id(), simulation.id))


@simulations_bp.route('/simulations/<int:simulation_id>', methods=['GET'])
def get_simulation(simulation_id):
    detail = SimulationService.get_simulation_detail(get_user_id(), simulation_id)
    attempt = request.args.get('attempt', 0, type=int)
    detail['poll_interval_seconds'] = SimulationService.poll_interval(attempt)
    return jsonify(detail)


@simulations_bp.route('/simulations/<int:simulation_id>/activate', methods=['POST'])
def activate_simulation(simulation_id):
    simulation = SimulationService.activate_simulation(get_user_id(), simulation_id)
    return jsonify(simulation.to_dict())


@simulations_bp.route('/simulations/<int:simulation_id>/cancel', methods=['POST'])
def cancel_simulation(simulation_id):
    simulation = SimulationService.cancel_simulation(get_user_id(), simulation_id)
    return jsonify(simulation.to_dict())


@simulations_bp.route('/simulations/<int:simulation_id>/retry', methods=['POST'])
def retry_simulation(simulation_id):
    if not SimulationService.retry_simulation(get_user_id(), simulation_id):
        raise PreconditionError(f'Simulation {simulation_id} is not in error',
                                code='SIMULATION_NOT_IN_ERROR')
    return jsonify({
        'simulation_id': simulation_id,
        'status': 'running',
        'poll_interval_seconds': SimulationService.poll_interval(0),
    }), 202
