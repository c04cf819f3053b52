"""
HTTP-level tests: authentication, JSON error envelopes and the main flows
through each blueprint.
"""
import pytest

from utils.loan_math import month_start


LOAN_BODY = {
    'name': 'Car loan',
    'principal': 10000,
    'remaining_balance': 10000,
    'annual_rate': 0.12,
    'term_months': 24,
    'start_month': '2025-01-01',
}


def _error_code(response):
    return response.get_json()['error']['code']


class TestAuthentication:
    @pytest.mark.parametrize('method,url', [
        ('get', '/api/loans'),
        ('get', '/api/user-settings'),
        ('get', '/api/strategies'),
        ('post', '/api/simulations'),
        ('get', '/api/monthly-execution-logs'),
        ('get', '/api/dashboard/overview'),
    ])
    def test_anonymous_gets_401(self, client, method, url):
        response = getattr(client, method)(url)
        assert response.status_code == 401
        assert _error_code(response) == 'UNAUTHORIZED'

    def test_login_and_logout(self, client, user):
        response = client.post('/auth/login', json={'email': 'Owner@Example.com', 'password': 'TestPass1!'})
        assert response.status_code == 200
        assert response.get_json()['user']['id'] == user.id
        assert client.get('/api/loans').status_code == 200

        assert client.post('/auth/logout').status_code == 204
        assert client.get('/api/loans').status_code == 401

    def test_wrong_password(self, client, user):
        response = client.post('/auth/login', json={'email': user.email, 'password': 'nope'})
        assert response.status_code == 401
        assert _error_code(response) == 'INVALID_CREDENTIALS'

    def test_unknown_email_looks_like_wrong_password(self, client, user):
        response = client.post('/auth/login', json={'email': 'nobody@example.com', 'password': 'x'})
        assert response.status_code == 401
        assert _error_code(response) == 'INVALID_CREDENTIALS'

    def test_missing_fields(self, client):
        assert client.post('/auth/login', json={}).status_code == 400

    def test_lockout_after_repeated_failures(self, app, client, user):
        for _ in range(app.config['MAX_LOGIN_ATTEMPTS']):
            response = client.post('/auth/login', json={'email': user.email, 'password': 'nope'})
        assert response.status_code == 403
        assert _error_code(response) == 'ACCOUNT_LOCKED'

        response = client.post('/auth/login', json={'email': user.email, 'password': 'TestPass1!'})
        assert response.status_code == 403


class TestErrorEnvelope:
    def test_unknown_route_is_json(self, auth_client):
        response = auth_client.get('/api/does-not-exist')
        assert response.status_code == 404
        assert _error_code(response) == 'NOT_FOUND'

    def test_security_headers(self, client):
        response = client.get('/api/loans')
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'

    def test_non_object_body_rejected(self, auth_client):
        response = auth_client.post('/api/loans', json=[1, 2, 3])
        assert response.status_code == 400
        assert _error_code(response) == 'VALIDATION_ERROR'


class TestLoanRoutes:
    def test_create_get_patch_delete(self, auth_client):
        created = auth_client.post('/api/loans', json=LOAN_BODY)
        assert created.status_code == 201
        loan_id = created.get_json()['id']
        etag = created.headers['ETag']
        assert etag.startswith('W/"loan:')

        fetched = auth_client.get(f'/api/loans/{loan_id}')
        assert fetched.headers['ETag'] == etag

        patched = auth_client.patch(f'/api/loans/{loan_id}', json={'annual_rate': 0.1},
                                    headers={'If-Match': etag})
        assert patched.status_code == 200
        assert patched.headers['ETag'] != etag

        assert auth_client.delete(f'/api/loans/{loan_id}').get_json()['deleted'] is True
        assert auth_client.get(f'/api/loans/{loan_id}').status_code == 404

    def test_put_requires_if_match(self, auth_client, loan):
        response = auth_client.put(f'/api/loans/{loan.id}', json=LOAN_BODY)
        assert response.status_code == 412
        assert _error_code(response) == 'LOAN_ETAG_REQUIRED'

    def test_put_with_outdated_tag(self, auth_client, loan):
        response = auth_client.put(f'/api/loans/{loan.id}', json=LOAN_BODY,
                                   headers={'If-Match': 'W/"loan:0:old"'})
        assert response.status_code == 412
        assert _error_code(response) == 'LOAN_ETAG_MISMATCH'

    def test_list_filter(self, auth_client, loan):
        body = auth_client.get('/api/loans?is_closed=false').get_json()
        assert body['total'] == 1
        assert auth_client.get('/api/loans?is_closed=maybe').status_code == 400

    def test_close(self, auth_client, loan):
        response = auth_client.post(f'/api/loans/{loan.id}/close', json={'closed_month': '2025-05-01'})
        assert response.get_json()['is_closed'] is True
        assert auth_client.post(f'/api/loans/{loan.id}/close').status_code == 409

    def test_stale_flag_in_response(self, auth_client, loan, active_simulation):
        response = auth_client.patch(f'/api/loans/{loan.id}', json={'remaining_balance': 9000})
        assert response.get_json()['stale_simulation'] is True

    def test_other_users_loan_hidden(self, auth_client, other_user, make_loan):
        theirs = make_loan(other_user, 500, '0.05', 12)
        assert auth_client.get(f'/api/loans/{theirs.id}').status_code == 404


class TestSettingsRoutes:
    def test_create_then_update(self, auth_client):
        assert _error_code(auth_client.get('/api/user-settings')) == 'USER_SETTINGS_NOT_FOUND'

        created = auth_client.put('/api/user-settings', json={'monthly_overpayment_limit': 150})
        assert created.status_code == 201
        version = created.headers['ETag']

        updated = auth_client.put('/api/user-settings', json={'monthly_overpayment_limit': 175},
                                  headers={'If-Match': version})
        assert updated.status_code == 200
        assert updated.get_json()['monthly_overpayment_limit'] == 175.0

    def test_outdated_version(self, auth_client, settings):
        response = auth_client.put('/api/user-settings', json={'monthly_overpayment_limit': 1},
                                   headers={'If-Match': '1999-01-01T00:00:00'})
        assert response.status_code == 409


class TestSimulationRoutes:
    def test_strategies(self, auth_client):
        ids = [item['id'] for item in auth_client.get('/api/strategies').get_json()['items']]
        assert ids == ['avalanche', 'snowball', 'equal', 'ratio']

    def test_queue_poll_activate(self, auth_client, loan, settings):
        queued = auth_client.post('/api/simulations', json={'strategy': 'snowball'})
        assert queued.status_code == 202
        simulation_id = queued.get_json()['simulation_id']

        detail = auth_client.get(f'/api/simulations/{simulation_id}?attempt=2').get_json()
        assert detail['status'] == 'completed'
        assert detail['poll_interval_seconds'] == pytest.approx(3.38)
        assert len(detail['loan_snapshots']) == 1

        activated = auth_client.post(f'/api/simulations/{simulation_id}/activate')
        assert activated.get_json()['status'] == 'active'
        assert auth_client.get('/api/simulations/active').get_json()['id'] == simulation_id

    def test_no_active_simulation(self, auth_client):
        assert auth_client.get('/api/simulations/active').status_code == 404

    def test_invalid_strategy(self, auth_client):
        response = auth_client.post('/api/simulations', json={'strategy': 'lottery'})
        assert response.status_code == 400
        assert _error_code(response) == 'INVALID_STRATEGY'

    def test_cancel_completed(self, auth_client, loan):
        simulation_id = auth_client.post('/api/simulations', json={'strategy': 'equal'}) \
            .get_json()['simulation_id']
        response = auth_client.post(f'/api/simulations/{simulation_id}/cancel')
        assert response.status_code == 412
        assert _error_code(response) == 'SIMULATION_NOT_RUNNING'

    def test_retry_requires_error(self, auth_client, loan):
        simulation_id = auth_client.post('/api/simulations', json={'strategy': 'ratio'}) \
            .get_json()['simulation_id']
        response = auth_client.post(f'/api/simulations/{simulation_id}/retry')
        assert response.status_code == 412
        assert _error_code(response) == 'SIMULATION_NOT_IN_ERROR'

    def test_list(self, auth_client, loan):
        auth_client.post('/api/simulations', json={'strategy': 'avalanche'})
        body = auth_client.get('/api/simulations?status=completed').get_json()
        assert body['total'] == 1


class TestExecutionLogAndDashboardRoutes:
    def test_dashboard_without_plan(self, auth_client, loan):
        response = auth_client.get('/api/dashboard/overview')
        assert response.status_code == 404
        assert _error_code(response) == 'ACTIVE_SIMULATION_NOT_FOUND'

    def test_dashboard_then_patch_log(self, auth_client, loan, active_simulation):
        overview = auth_client.get('/api/dashboard/overview?include=adherence').get_json()
        entries = overview['current_month']['entries']
        assert len(entries) == 1
        assert overview['current_month']['month_start'] == month_start().isoformat()

        response = auth_client.patch(f"/api/monthly-execution-logs/{entries[0]['log_id']}",
                                     json={'payment_status': 'paid'})
        assert response.status_code == 200
        assert response.get_json()['payment_status'] == 'paid'

        logs = auth_client.get('/api/monthly-execution-logs?payment_status=paid').get_json()
        assert logs['total'] == 1

    def test_bad_include_flag(self, auth_client, active_simulation):
        assert auth_client.get('/api/dashboard/overview?include=everything').status_code == 400

    def test_create_log(self, auth_client, loan):
        response = auth_client.post('/api/monthly-execution-logs', json={
            'loan_id': loan.id,
            'month_start': '2025-02-01',
            'payment_status': 'paid',
        })
        assert response.status_code == 201
        assert response.get_json()['payment_executed_at'] is not None

    def test_invalid_transition(self, auth_client, loan):
        log_id = auth_client.post('/api/monthly-execution-logs', json={
            'loan_id': loan.id, 'month_start': '2025-02-01', 'payment_status': 'paid',
        }).get_json()['id']
        response = auth_client.patch(f'/api/monthly-execution-logs/{log_id}',
                                     json={'payment_status': 'pending'})
        assert response.status_code == 400
        assert _error_code(response) == 'INVALID_STATUS_TRANSITION'
