import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.api.app import app
from helpers import ScriptedConverter, build_manager

PLAN = {
  'project_id': 'proj-api',
  'source_stack': {'language': 'javascript'},
  'target_stack': {'language': 'python'},
  'tasks': [
    {'id': 'analyze', 'type': 'analysis', 'description': 'Inventory the routes', 'estimatedDuration': 5},
    {'id': 'routes', 'kind': 'code_generation', 'description': 'Port the routes', 'dependencies': ['analyze'], 'estimated_duration': 15}
  ]
}


@pytest.fixture
def client():
  original = app.state.manager
  app.state.manager = build_manager(ScriptedConverter())
  try:
    with TestClient(app) as test_client:
      yield test_client
  finally:
    app.state.manager = original


def wait_for_status(client, job_id, wanted, timeout=5.0):
  deadline = time.monotonic() + timeout
  while time.monotonic() < deadline:
    job = client.get(f'/jobs/{job_id}').json()['job']
    if job['status'] == wanted:
      return job
    time.sleep(0.01)
  raise AssertionError(f'job {job_id} never reached {wanted}')


def test_validate_reports_order_and_levels(client):
  resp = client.post('/jobs/validate', json={'plan': PLAN})

  assert resp.status_code == 200
  body = resp.json()
  assert body['valid'] is True
  assert body['order'] == ['analyze', 'routes']
  assert body['levels'] == [['analyze'], ['routes']]
  assert body['estimated_duration'] == 20


def test_validate_rejects_cycles_with_422(client):
  plan = {'tasks': [
    {'id': 'A', 'kind': 'analysis', 'description': 'a', 'dependencies': ['B']},
    {'id': 'B', 'kind': 'analysis', 'description': 'b', 'dependencies': ['A']}
  ]}

  resp = client.post('/jobs/validate', json={'plan': plan})

  assert resp.status_code == 422
  detail = resp.json()['detail']
  assert detail['code'] == 'CIRCULAR_DEPENDENCY'
  assert sorted(detail['task_ids']) == ['A', 'B']


@pytest.mark.parametrize('path', ['/jobs/validate', '/jobs'])
def test_malformed_plan_is_rejected_with_422(client, path):
  plan = {'tasks': [{'id': 'T1', 'kind': 'analysis', 'description': 'scan', 'priority': 'urgent'}]}

  resp = client.post(path, json={'project_id': 'proj-api', 'plan': plan})

  assert resp.status_code == 422
  detail = resp.json()['detail']
  assert detail['code'] == 'MALFORMED_PLAN'
  assert detail['task_ids'] == ['T1']


def test_create_start_and_fetch_results(client):
  resp = client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN, 'source_files': {'src/app.js': 'app.get()'}})
  assert resp.status_code == 201
  job = resp.json()['job']
  assert job['status'] == 'pending'
  assert job['tasks']['routes']['dependencies'] == ['analyze']

  started = client.post(f"/jobs/{job['id']}/start")
  assert started.status_code == 200

  finished = wait_for_status(client, job['id'], 'completed')
  assert finished['progress'] == 100
  assert finished['summary']['counts']['completed'] == 2

  results = client.get(f"/jobs/{job['id']}/results").json()
  assert [result['task_id'] for result in results['results']] == ['analyze', 'routes']
  assert results['results'][1]['files'][0]['path'] == 'out/routes.py'


def test_auto_start_and_listing(client):
  first = client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN}).json()['job']
  second = client.post('/jobs', json={'project_id': 'other', 'plan': PLAN, 'auto_start': True}).json()['job']
  wait_for_status(client, second['id'], 'completed')

  everything = client.get('/jobs').json()['jobs']
  by_project = client.get('/jobs', params={'project_id': 'proj-api'}).json()['jobs']
  completed = client.get('/jobs', params={'status': 'completed'}).json()['jobs']

  assert [job['id'] for job in everything] == [second['id'], first['id']]
  assert [job['id'] for job in by_project] == [first['id']]
  assert [job['id'] for job in completed] == [second['id']]


def test_illegal_transition_maps_to_409(client):
  job = client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN}).json()['job']

  resp = client.post(f"/jobs/{job['id']}/pause")

  assert resp.status_code == 409
  assert resp.json()['action'] == 'pause'
  assert resp.json()['status'] == 'pending'


def test_unknown_job_maps_to_404(client):
  assert client.get('/jobs/nope').status_code == 404
  assert client.post('/jobs/nope/cancel').status_code == 404
  assert client.delete('/jobs/nope').status_code == 404


def test_delete_job(client):
  job = client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN}).json()['job']

  resp = client.delete(f"/jobs/{job['id']}")

  assert resp.json() == {'deleted': job['id']}
  assert client.get(f"/jobs/{job['id']}").status_code == 404


def test_create_rejects_missing_project(client):
  resp = client.post('/jobs', json={'project_id': '', 'plan': PLAN})
  assert resp.status_code == 422


def test_progress_stream_sends_snapshot_for_finished_job(client):
  job = client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN, 'auto_start': True}).json()['job']
  wait_for_status(client, job['id'], 'completed')

  with client.websocket_connect(f"/jobs/{job['id']}/progress") as websocket:
    message = websocket.receive_json()

  assert message['type'] == 'snapshot'
  assert message['job']['status'] == 'completed'


def test_progress_stream_rejects_unknown_job(client):
  with pytest.raises(WebSocketDisconnect) as info:
    with client.websocket_connect('/jobs/missing/progress') as websocket:
      websocket.receive_json()
  assert info.value.code == 4404


def test_health_reports_job_counts(client):
  client.post('/jobs', json={'project_id': 'proj-api', 'plan': PLAN})

  body = client.get('/health').json()

  assert body['status'] == 'ok'
  assert body['jobs']['pending'] == 1
  assert body['max_concurrent'] == 2
  assert 'cpu' in body['resources']
