"""
Client side of offline sync: a durable FIFO of pending actions kept in a
local SQLite file, flushed to ``/api/sync/batch`` when the device is online.

The queue has a single writer (the device app). Actions keep their client
action id across retries, so a batch that reached the server but whose reply
was lost is answered from the server's replay record on the next flush.
"""
import logging
import uuid
from datetime import datetime

import requests
from sqlalchemy import (JSON, Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, func,
                        select)

log = logging.getLogger("educafric.offline_queue")

metadata = MetaData()

queue_table = Table(
    'sync_queue', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('client_action_id', String(64), nullable=False, unique=True),
    Column('entity_type', String(20), nullable=False),
    Column('action', String(10), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('temp_id', String(64)),
    Column('status', String(10), nullable=False, default='pending'),
    Column('retries', Integer, nullable=False, default=0),
    Column('last_error', Text),
    Column('server_id', Integer),
    Column('created_at', DateTime, default=datetime.utcnow),
    Column('synced_at', DateTime),
)


class QueueFull(Exception):
    pass


class SyncUnavailable(Exception):
    """The server could not be reached; nothing was changed locally"""


class SyncClient:
    def __init__(self, base_url, token, session=None, timeout=30):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({'Authorization': f'Bearer {token}'})
        self.timeout = timeout

    def send_batch(self, actions):
        response = self.session.post(f'{self.base_url}/api/sync/batch', json={'actions': actions},
                                     timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def status(self):
        response = self.session.get(f'{self.base_url}/api/sync/status', timeout=self.timeout)
        response.raise_for_status()
        return response.json()


def _server_id(value, id_map):
    # id_map keys come back as JSON strings; numeric temp ids match on their text
    if value is None or isinstance(value, (bool, dict, list)):
        return value
    return id_map.get(str(value), value)


class OfflineQueue:
    def __init__(self, path, max_size=500, max_retries=3):
        self.engine = create_engine(f'sqlite:///{path}')
        self.max_size = max_size
        self.max_retries = max_retries
        metadata.create_all(self.engine)

    def enqueue(self, entity_type, action, payload, temp_id=None):
        """Store an action and return its client action id"""
        with self.engine.begin() as conn:
            pending = conn.execute(select(func.count()).select_from(queue_table)
                                   .where(queue_table.c.status == 'pending')).scalar()
            if pending >= self.max_size:
                raise QueueFull(f'Offline queue is full ({self.max_size} pending actions)')
            client_action_id = uuid.uuid4().hex
            conn.execute(queue_table.insert().values(
                client_action_id=client_action_id,
                entity_type=entity_type,
                action=action,
                payload=payload,
                temp_id=str(temp_id) if temp_id is not None else None,
                status='pending',
                retries=0,
                created_at=datetime.utcnow(),
            ))
        return client_action_id

    def pending(self, limit=None, exclude=()):
        query = select(queue_table).where(queue_table.c.status == 'pending').order_by(queue_table.c.id)
        if exclude:
            query = query.where(queue_table.c.id.notin_(list(exclude)))
        if limit:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(query)]

    def stats(self):
        counts = {'pending': 0, 'synced': 0, 'failed': 0}
        with self.engine.connect() as conn:
            rows = conn.execute(select(queue_table.c.status, func.count()).group_by(queue_table.c.status))
            for status, count in rows:
                counts[status] = count
        counts['total'] = sum(counts.values())
        return counts

    def clear_synced(self):
        with self.engine.begin() as conn:
            return conn.execute(queue_table.delete().where(queue_table.c.status == 'synced')).rowcount

    def _rewrite_temp_ids(self, conn, id_map):
        """Swap temporary ids for server ids in the id fields of pending payloads"""
        rows = conn.execute(select(queue_table.c.id, queue_table.c.payload)
                            .where(queue_table.c.status == 'pending')).all()
        for row_id, payload in rows:
            changed = {key: _server_id(value, id_map) if key == 'id' or key.endswith('_id') else value
                       for key, value in payload.items()}
            if changed != payload:
                conn.execute(queue_table.update().where(queue_table.c.id == row_id).values(payload=changed))

    def flush(self, client, batch_size=100):
        """Send pending actions in FIFO batches and record the outcome of each"""
        summary = {'sent': 0, 'synced': 0, 'failed': 0, 'remaining': 0}
        attempted = set()
        while True:
            batch = self.pending(limit=batch_size, exclude=attempted)
            if not batch:
                break
            actions = [{'id': row['client_action_id'], 'type': row['entity_type'], 'action': row['action'],
                        'data': row['payload'], 'temp_id': row['temp_id']} for row in batch]
            try:
                response = client.send_batch(actions)
            except (requests.RequestException, ValueError) as e:
                log.warning("Sync unavailable: %s", e)
                raise SyncUnavailable(str(e)) from e

            summary['sent'] += len(batch)
            acknowledged = {r.get('id'): r for r in response.get('results', [])}
            errors = {e.get('id'): e for e in response.get('errors', [])}
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                for row in batch:
                    attempted.add(row['id'])
                    result = acknowledged.get(row['client_action_id'])
                    if result is not None:
                        conn.execute(queue_table.update().where(queue_table.c.id == row['id']).values(
                            status='synced', server_id=result.get('server_id'), last_error=None, synced_at=now))
                        summary['synced'] += 1
                        continue
                    error = errors.get(row['client_action_id']) or {}
                    retries = row['retries'] + 1
                    status = 'failed' if retries >= self.max_retries else 'pending'
                    conn.execute(queue_table.update().where(queue_table.c.id == row['id']).values(
                        status=status, retries=retries, last_error=error.get('message', 'Not acknowledged')))
                    if status == 'failed':
                        summary['failed'] += 1
                if response.get('id_map'):
                    self._rewrite_temp_ids(conn, response['id_map'])

        summary['remaining'] = self.stats()['pending']
        log.info("Offline queue flushed: %s", summary)
        return summary
