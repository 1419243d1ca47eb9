import pytest
import requests

from offline_queue import OfflineQueue, QueueFull, SyncClient, SyncUnavailable


class FakeServer:
    """Acknowledges actions like /api/sync/batch; ids listed in ``reject`` fail"""

    def __init__(self, reject=()):
        self.batches = []
        self.reject = set(reject)
        self.next_id = 100

    def send_batch(self, actions):
        self.batches.append(actions)
        results, errors, id_map = [], [], {}
        for action in actions:
            if action['data'].get('title') in self.reject:
                errors.append({'id': action['id'], 'message': 'Validation failed'})
                continue
            self.next_id += 1
            results.append({'id': action['id'], 'server_id': self.next_id})
            if action['temp_id'] is not None:
                id_map[action['temp_id']] = self.next_id
        return {'results': results, 'errors': errors, 'id_map': id_map}


class OfflineServer:
    def send_batch(self, actions):
        raise requests.ConnectionError('Network is unreachable')


@pytest.fixture
def queue(tmp_path):
    return OfflineQueue(tmp_path / 'queue.db', max_size=3)


def test_enqueue_keeps_fifo_order(queue):
    first = queue.enqueue('homework', 'create', {'title': 'A'}, temp_id='tmp-1')
    second = queue.enqueue('attendance', 'create', {'status': 'absent'})
    assert first != second
    pending = queue.pending()
    assert [row['client_action_id'] for row in pending] == [first, second]
    assert pending[0]['temp_id'] == 'tmp-1'
    assert pending[1]['payload'] == {'status': 'absent'}


def test_queue_has_a_size_limit(queue):
    for index in range(3):
        queue.enqueue('homework', 'create', {'title': str(index)})
    with pytest.raises(QueueFull):
        queue.enqueue('homework', 'create', {'title': 'trop'})


def test_flush_marks_acknowledged_actions_synced(queue):
    queue.enqueue('homework', 'create', {'title': 'A'})
    queue.enqueue('homework', 'create', {'title': 'B'})
    server = FakeServer()
    assert queue.flush(server) == {'sent': 2, 'synced': 2, 'failed': 0, 'remaining': 0}
    assert len(server.batches) == 1
    assert queue.stats() == {'pending': 0, 'synced': 2, 'failed': 0, 'total': 2}


def test_temporary_ids_are_rewritten_between_batches(queue):
    queue.enqueue('homework', 'create', {'title': 'Fractions'}, temp_id='tmp-1')
    queue.enqueue('homework', 'update', {'id': 'tmp-1', 'priority': 'high'})
    server = FakeServer()
    queue.flush(server, batch_size=1)
    assert len(server.batches) == 2
    assert server.batches[1][0]['data'] == {'id': 101, 'priority': 'high'}


def test_only_id_fields_take_server_ids(queue):
    queue.enqueue('student', 'create', {'first_name': 'Awa'}, temp_id=-1)
    queue.enqueue('grade', 'create', {'student_id': -1, 'comment': '-1', 'value': 14})
    queue.enqueue('homework', 'update', {'id': '-1', 'class_id': 7, 'title': 'Devoir -1'})
    server = FakeServer()
    queue.flush(server, batch_size=1)
    assert server.batches[1][0]['data'] == {'student_id': 101, 'comment': '-1', 'value': 14}
    assert server.batches[2][0]['data'] == {'id': 101, 'class_id': 7, 'title': 'Devoir -1'}


def test_rejected_actions_retry_then_fail(queue):
    action_id = queue.enqueue('homework', 'create', {'title': 'bad'})
    server = FakeServer(reject={'bad'})

    assert queue.flush(server)['remaining'] == 1
    assert queue.flush(server)['remaining'] == 1
    summary = queue.flush(server)
    assert summary['failed'] == 1
    assert summary['remaining'] == 0
    assert queue.stats()['failed'] == 1
    assert all(batch[0]['id'] == action_id for batch in server.batches)


def test_unreachable_server_leaves_the_queue_untouched(queue):
    queue.enqueue('homework', 'create', {'title': 'A'})
    with pytest.raises(SyncUnavailable):
        queue.flush(OfflineServer())
    pending = queue.pending()
    assert len(pending) == 1
    assert pending[0]['retries'] == 0


def test_clear_synced(queue):
    queue.enqueue('homework', 'create', {'title': 'A'})
    queue.enqueue('homework', 'create', {'title': 'bad'})
    queue.flush(FakeServer(reject={'bad'}))
    assert queue.clear_synced() == 1
    assert queue.stats() == {'pending': 1, 'synced': 0, 'failed': 0, 'total': 1}


class RecordingHttpSession:
    def __init__(self):
        self.headers = {}
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return FakeHttpResponse({'results': [], 'errors': [], 'id_map': {}})

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return FakeHttpResponse({'sync_available': True})


class FakeHttpResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


def test_sync_client_sends_bearer_token():
    session = RecordingHttpSession()
    client = SyncClient('https://school.example.cm/', 'abc', session=session, timeout=5)
    client.send_batch([{'id': '1'}])
    assert session.headers['Authorization'] == 'Bearer abc'
    url, kwargs = session.calls[0]
    assert url == 'https://school.example.cm/api/sync/batch'
    assert kwargs == {'json': {'actions': [{'id': '1'}]}, 'timeout': 5}
    assert client.status() == {'sync_available': True}
