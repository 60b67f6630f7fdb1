import copy
import itertools
import re
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.services import Services
from api.services.conversation import ConversationStore
from api.services.images import ImageService
from api.tools import ToolContext
from app import create_app
from lib.config import Settings
from lib.database import Database
from lib.twilio_client import NullMessagingClient

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _ilike_regex(pattern: str) -> re.Pattern:
    parts = []
    chars = iter(pattern)
    for char in chars:
        if char == '\\':
            parts.append(re.escape(next(chars, '')))
        elif char == '%':
            parts.append('.*')
        elif char == '_':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.IGNORECASE | re.DOTALL)


class FakeQuery:
    """Enough of the postgrest query builder for the code under test."""

    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table = table
        self.action = 'select'
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.ordering = None
        self.row_limit = None

    def select(self, *columns, **kwargs):
        return self

    def insert(self, data):
        self.action, self.payload = 'insert', data
        return self

    def upsert(self, data, on_conflict=None, **kwargs):
        self.action, self.payload, self.on_conflict = 'upsert', data, on_conflict
        return self

    def update(self, data):
        self.action, self.payload = 'update', data
        return self

    def delete(self):
        self.action = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def ilike(self, column, pattern):
        regex = _ilike_regex(pattern)
        self.filters.append(lambda row: row.get(column) is not None and regex.fullmatch(str(row[column])) is not None)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row[column] >= value)
        return self

    def order(self, column, desc=False, **kwargs):
        self.ordering = (column, desc)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def _matches(self, row) -> bool:
        return all(check(row) for check in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.action))
        if self.table in self.db.failing_tables:
            raise Exception(f"{self.table} is unavailable")

        rows = self.db.tables.setdefault(self.table, [])
        if self.action == 'insert':
            return SimpleNamespace(data=[self.db.add(self.table, item) for item in _as_list(self.payload)])
        if self.action == 'upsert':
            return SimpleNamespace(data=[self._upsert_one(rows, item) for item in _as_list(self.payload)])
        if self.action == 'update':
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            return SimpleNamespace(data=updated)
        if self.action == 'delete':
            deleted = [row for row in rows if self._matches(row)]
            self.db.tables[self.table] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=copy.deepcopy(deleted))

        selected = [row for row in rows if self._matches(row)]
        if self.ordering:
            column, desc = self.ordering
            present = [row for row in selected if row.get(column) is not None]
            missing = [row for row in selected if row.get(column) is None]
            selected = sorted(present, key=lambda row: row[column], reverse=desc) + missing
        if self.row_limit is not None:
            selected = selected[:self.row_limit]
        return SimpleNamespace(data=copy.deepcopy(selected))

    def _upsert_one(self, rows, item):
        if self.on_conflict:
            keys = [key.strip() for key in self.on_conflict.split(',')]
            for row in rows:
                if all(row.get(key) == item.get(key) for key in keys):
                    row.update(copy.deepcopy(item))
                    return copy.deepcopy(row)
        return self.db.add(self.table, item)


def _as_list(payload):
    return payload if isinstance(payload, list) else [payload]


class FakeBucket:
    def __init__(self, storage: 'FakeStorage', name: str):
        self.storage = storage
        self.name = name

    def upload(self, path, data, file_options=None):
        if self.storage.fail:
            raise Exception("storage is unavailable")
        self.storage.objects[(self.name, path)] = (data, file_options)
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        return f"https://storage.test/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail = False

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeSupabase:
    """In-memory stand-in for the Supabase client."""

    def __init__(self):
        self.tables = {}
        self.failing_tables = set()
        self.calls = []
        self.storage = FakeStorage()
        self._clock = itertools.count(1)

    def table(self, name):
        return FakeQuery(self, name)

    def add(self, table, item):
        row = copy.deepcopy(item)
        row.setdefault('id', str(uuid.uuid4()))
        row.setdefault('created_at', (EPOCH + timedelta(seconds=next(self._clock))).isoformat())
        self.tables.setdefault(table, []).append(row)
        return copy.deepcopy(row)

    def seed(self, table, **fields):
        return self.add(table, fields)

    def rows(self, table):
        return self.tables.get(table, [])


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openai_api_key='test-openai-key',
        twilio_account_sid='ACtest',
        twilio_auth_token='test-token',
        twilio_whatsapp_number='whatsapp:+15550000000',
        supabase_url='https://example.supabase.co',
        supabase_key='test-supabase-key',
        app_base_url='https://sakesatur.day',
        admin_phone_numbers='+15551112222',
        sake_api_key='test-api-key',
        chat_ui_general_password='kanpai',
        chat_ui_admin_password='sensei-only',
        chat_ui_session_secret='a-session-secret-long-enough',
        google_api_key='test-google-key',
    )


@pytest.fixture
def tool_context(fake_supabase):
    return ToolContext(
        supabase=fake_supabase,
        messaging=NullMessagingClient(),
        from_number='whatsapp:+15550001111',
        to_number='whatsapp:+15550000000',
        base_url='https://sakesatur.day',
        request_id='test',
    )


@pytest.fixture
def mock_chat_service():
    chat = MagicMock()
    chat.process_message = AsyncMock(return_value={
        'response': 'Kanpai!',
        'context_updated': False,
        'tool_calls': [],
        'timestamp': '2024-01-01T00:00:00+00:00',
    })
    chat.is_admin.return_value = False
    chat.stream_web_reply.side_effect = lambda messages, phone, request_id=None: iter(['Kan', 'pai!'])
    return chat


@pytest.fixture
def services(settings, fake_supabase, mock_chat_service):
    twilio = MagicMock()
    twilio.send_message.return_value = 'SM_reply'
    return Services(
        settings=settings,
        database=Database(settings, client=fake_supabase),
        conversation=ConversationStore(fake_supabase, history_limit=20),
        chat=mock_chat_service,
        images=ImageService(settings, fake_supabase, twilio_client=twilio),
        twilio=twilio,
    )


@pytest.fixture
def test_client(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app.test_client()
