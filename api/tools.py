"""Operations the model can call while it talks to a user.

Each tool declares a pydantic argument model (its JSON schema is what the
model sees), a description the model uses to pick it, and a blocking
implementation with real side effects against Supabase or the messaging
provider. Tools share no in-memory state; everything lives in the database.
"""
import asyncio
import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from statistics import mean
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError

from lib.error_handler import ToolExecutionError
from lib.openai_client import ToolOutcome
from lib.phone import ensure_phone_link, hash_phone_number, resolve_taster_by_phone
from lib.ranks import next_rank_for, rank_for

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10
DEFAULT_RANKINGS_LIMIT = 10
DEFAULT_ADMIN_LIST_LIMIT = 20
COLUMN_NAME = re.compile(r'^[a-z_][a-z0-9_]*$')

# Blocking tool bodies run off the event loop, outside the default executor that asyncio.run joins on exit.
TOOL_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix='sake-tool')


@dataclass
class ToolContext:
    supabase: Any
    messaging: Any
    from_number: str
    to_number: str
    base_url: str
    request_id: str = ''

    def tasting_url(self, tasting_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/tasting/{tasting_id}"

    def sake_url(self, sake_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/sake/{sake_id}"


# Argument models

class SendMessageArgs(BaseModel):
    text: str = Field(description='Short status update to send right now')


class IdentifySakeArgs(BaseModel):
    name: str = Field(description='Name of the sake (required)')
    brewery: Optional[str] = Field(None, description='Brewery or bottling company name')
    prefecture: Optional[str] = Field(None, description='Prefecture/region where the sake is from')
    grade: Optional[str] = Field(None, description='Sake grade (e.g. Daiginjo, Ginjo, Junmai, Honjozo)')
    type: Optional[str] = Field(None, description='Type classification')
    rice: Optional[str] = Field(None, description='Rice variety used (e.g. Yamada Nishiki)')
    polishing_ratio: Optional[float] = Field(None, description='Polishing ratio as a percentage (e.g. 50 for 50%)')
    alc_pct: Optional[float] = Field(None, description='Alcohol percentage (ABV)')
    smv: Optional[float] = Field(None, description='Sake Meter Value (sweetness/dryness)')


class CreateTastingArgs(BaseModel):
    sake_id: str = Field(description='ID of the sake being tasted (from identify_sake)')
    date: Optional[str] = Field(None, description='Date of tasting in YYYY-MM-DD format (defaults to today)')
    location_name: Optional[str] = Field(None, description='Where the tasting is happening')
    created_by_phone: Optional[str] = Field(None, description='Phone number of the person creating the tasting')


class ScoreEntry(BaseModel):
    taster_name: str = Field(description='Name of the taster')
    taster_phone: Optional[str] = Field(None, description='Phone number of the taster, if known')
    score: float = Field(ge=0, le=10, description='Score from 0-10')
    notes: Optional[str] = Field(None, description='Tasting notes or comments')


class RecordScoresArgs(BaseModel):
    tasting_id: str = Field(description='ID of the tasting session')
    scores: List[ScoreEntry] = Field(min_length=1, description='Scores from different tasters')


class LookupTasterArgs(BaseModel):
    name: str = Field(description='Name of the taster')
    phone_number: Optional[str] = Field(None, description='Phone number of the taster')


class TastingHistoryArgs(BaseModel):
    sake_id: Optional[str] = Field(None, description='Only tastings of this sake')
    taster_id: Optional[str] = Field(None, description='Only tastings this taster scored')
    limit: Optional[int] = Field(None, ge=1, le=100, description='Maximum tastings to return (default 10)')


class SakeRankingsArgs(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=100, description='Maximum sakes to return (default 10)')
    min_tastings: Optional[int] = Field(None, ge=0, description='Minimum number of tastings to be included (default 1)')


class TasterRankArgs(BaseModel):
    taster_id: str = Field(description='ID of the taster')


class TastingSummaryArgs(BaseModel):
    tasting_id: str = Field(description='ID of the tasting session')


class AdminEditSakeArgs(BaseModel):
    sake_id: str
    name: Optional[str] = None
    brewery: Optional[str] = None
    prefecture: Optional[str] = None
    grade: Optional[str] = None
    type: Optional[str] = None
    rice: Optional[str] = None
    polishing_ratio: Optional[float] = None
    alc_pct: Optional[float] = None
    smv: Optional[float] = None
    front_image_url: Optional[str] = None
    back_image_url: Optional[str] = None


class AdminEditTasterArgs(BaseModel):
    taster_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    profile_image_url: Optional[str] = None
    ai_profile_image_url: Optional[str] = None


class AdminScoreUpdate(BaseModel):
    taster_id: str
    score: float = Field(ge=0, le=10)
    notes: Optional[str] = None


class AdminEditTastingArgs(BaseModel):
    tasting_id: str
    sake_id: Optional[str] = None
    date: Optional[str] = None
    location_name: Optional[str] = None
    notes: Optional[str] = None
    scores: Optional[List[AdminScoreUpdate]] = Field(None, description='Scores to set on this tasting')


AdminTable = Literal['sakes', 'tasters', 'tastings', 'scores']


class AdminDeleteArgs(BaseModel):
    table: AdminTable
    id: str


class AdminListArgs(BaseModel):
    table: AdminTable
    limit: Optional[int] = Field(None, ge=1, le=100)
    filters: Optional[Dict[str, Union[str, int, float, bool]]] = Field(
        None, description='Column equality filters, e.g. {"sake_id": "..."}'
    )


# Shared helpers

def exact_ilike(value: str) -> str:
    """Escape LIKE wildcards so ilike() matches the whole value case-insensitively."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def _first(result) -> Optional[Dict[str, Any]]:
    return result.data[0] if result.data else None


def _get_by_id(supabase, table: str, record_id: str) -> Optional[Dict[str, Any]]:
    return _first(supabase.table(table).select('*').eq('id', record_id).limit(1).execute())


def _require(supabase, table: str, record_id: str) -> Dict[str, Any]:
    record = _get_by_id(supabase, table, record_id)
    if record is None:
        raise ToolExecutionError(f"No {table} record with id {record_id}")
    return record


def distinct_tasting_count(supabase, taster_id: str) -> int:
    result = supabase.table('scores').select('tasting_id').eq('taster_id', taster_id).execute()
    return len({row['tasting_id'] for row in result.data or []})


def resolve_taster(supabase, name: str, phone_number: Optional[str] = None) -> Dict[str, Any]:
    """Find a taster by phone, then by name, else create one.

    Phone wins because names are not unique. Name matching is exact and
    case-insensitive with no disambiguation.
    """
    if phone_number:
        resolution = resolve_taster_by_phone(supabase, phone_number)
        if resolution.taster_id:
            taster = _get_by_id(supabase, 'tasters', resolution.taster_id)
            if taster:
                ensure_phone_link(supabase, taster['id'], phone_number)
                return {'success': True, 'taster': taster, 'created': False}

    existing = _first(
        supabase.table('tasters').select('*').ilike('name', exact_ilike(name)).limit(1).execute()
    )
    if existing:
        if phone_number:
            ensure_phone_link(supabase, existing['id'], phone_number)
        return {'success': True, 'taster': existing, 'created': False}

    created = _first(supabase.table('tasters').insert({
        'name': name,
        'phone_hash': hash_phone_number(phone_number) if phone_number else None,
    }).execute())
    if created is None:
        raise ToolExecutionError(f"Failed to create taster {name}")
    if phone_number:
        ensure_phone_link(supabase, created['id'], phone_number)

    logger.info(f"Created taster {created['id']} ({name})")
    return {'success': True, 'taster': created, 'created': True}


# Tools

def send_message(ctx: ToolContext, args: SendMessageArgs) -> Dict[str, Any]:
    sid = ctx.messaging.send_message(ctx.from_number, args.text, ctx.to_number)
    return {'success': True, 'sid': sid, 'message': 'Message sent'}


def find_or_create_sake(supabase, args: IdentifySakeArgs) -> Tuple[Dict[str, Any], bool]:
    existing = _first(
        supabase.table('sakes').select('*').ilike('name', exact_ilike(args.name)).limit(1).execute()
    )
    if existing:
        return existing, False

    sake = _first(supabase.table('sakes').insert(args.model_dump(exclude_none=True)).execute())
    if sake is None:
        raise ToolExecutionError(f"Failed to create sake {args.name}")
    logger.info(f"Created sake {sake['id']} ({args.name})")
    return sake, True


def identify_sake(ctx: ToolContext, args: IdentifySakeArgs) -> Dict[str, Any]:
    sake, created = find_or_create_sake(ctx.supabase, args)
    return {
        'success': True,
        'sake': sake,
        'created': created,
        'sake_url': ctx.sake_url(sake['id']),
        'message': 'Created new sake in database' if created else 'Found existing sake in database',
    }


def create_tasting(ctx: ToolContext, args: CreateTastingArgs) -> Dict[str, Any]:
    created_by = None
    if args.created_by_phone:
        try:
            created_by = resolve_taster_by_phone(ctx.supabase, args.created_by_phone).taster_id
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Could not resolve tasting creator: {str(e)}")

    tasting = _first(ctx.supabase.table('tastings').insert({
        'sake_id': args.sake_id,
        'date': args.date or datetime.now(timezone.utc).date().isoformat(),
        'location_name': args.location_name,
        'created_by': created_by,
    }).execute())
    if tasting is None:
        raise ToolExecutionError("Failed to create tasting")

    return {
        'success': True,
        'tasting': tasting,
        'tasting_url': ctx.tasting_url(tasting['id']),
        'message': 'Created new tasting session',
    }


def record_scores(ctx: ToolContext, args: RecordScoresArgs) -> Dict[str, Any]:
    recorded = []
    failed = []
    for entry in args.scores:
        try:
            taster = resolve_taster(ctx.supabase, entry.taster_name, entry.taster_phone)['taster']
            score = _first(ctx.supabase.table('scores').upsert({
                'tasting_id': args.tasting_id,
                'taster_id': taster['id'],
                'score': entry.score,
                'notes': entry.notes,
            }, on_conflict='tasting_id,taster_id').execute())
            recorded.append({**(score or {}), 'taster_name': taster['name']})
        except Exception as e:
            logger.error(f"[{ctx.request_id}] Error recording score for {entry.taster_name}: {str(e)}")
            failed.append({'taster_name': entry.taster_name, 'error': str(e)})

    return {
        'success': True,
        'scores': recorded,
        'count': len(recorded),
        'failed': failed,
        'tasting_url': ctx.tasting_url(args.tasting_id),
        'message': f"Recorded {len(recorded)} score(s)",
    }


def lookup_taster(ctx: ToolContext, args: LookupTasterArgs) -> Dict[str, Any]:
    return resolve_taster(ctx.supabase, args.name, args.phone_number)


def get_tasting_history(ctx: ToolContext, args: TastingHistoryArgs) -> Dict[str, Any]:
    query = ctx.supabase.table('tastings').select(
        '*, sake:sakes(id, name, grade, prefecture), scores(score, notes, taster:tasters(id, name))'
    )
    if args.taster_id:
        scored = ctx.supabase.table('scores').select('tasting_id').eq('taster_id', args.taster_id).execute()
        tasting_ids = sorted({row['tasting_id'] for row in scored.data or []})
        if not tasting_ids:
            return {'success': True, 'tastings': [], 'count': 0}
        query = query.in_('id', tasting_ids)
    if args.sake_id:
        query = query.eq('sake_id', args.sake_id)

    result = query.order('date', desc=True).limit(args.limit or DEFAULT_HISTORY_LIMIT).execute()
    tastings = result.data or []
    return {'success': True, 'tastings': tastings, 'count': len(tastings)}


def get_sake_rankings(ctx: ToolContext, args: SakeRankingsArgs) -> Dict[str, Any]:
    min_tastings = args.min_tastings if args.min_tastings is not None else 1
    result = ctx.supabase.table('sake_rankings')\
        .select('*')\
        .gte('total_tastings', min_tastings)\
        .order('average_score', desc=True)\
        .limit(args.limit or DEFAULT_RANKINGS_LIMIT)\
        .execute()
    rankings = result.data or []
    return {'success': True, 'rankings': rankings, 'count': len(rankings)}


def get_taster_rank(ctx: ToolContext, args: TasterRankArgs) -> Dict[str, Any]:
    taster = _require(ctx.supabase, 'tasters', args.taster_id)
    count = distinct_tasting_count(ctx.supabase, taster['id'])
    following = next_rank_for(count)
    return {
        'success': True,
        'taster': {'id': taster['id'], 'name': taster.get('name')},
        'tasting_count': count,
        'rank': rank_for(count).to_dict(),
        'next_rank': following.to_dict() if following else None,
    }


def get_tasting_summary(ctx: ToolContext, args: TastingSummaryArgs) -> Dict[str, Any]:
    tasting = _require(ctx.supabase, 'tastings', args.tasting_id)
    sake = _get_by_id(ctx.supabase, 'sakes', tasting['sake_id']) if tasting.get('sake_id') else None

    scores = ctx.supabase.table('scores').select('*').eq('tasting_id', tasting['id']).execute().data or []
    taster_ids = sorted({row['taster_id'] for row in scores})
    names = {}
    if taster_ids:
        tasters = ctx.supabase.table('tasters').select('id, name').in_('id', taster_ids).execute().data or []
        names = {row['id']: row.get('name') for row in tasters}

    scorers = []
    level_ups = []
    for row in scores:
        current = distinct_tasting_count(ctx.supabase, row['taster_id'])
        # Assumes this tasting is the only one added since the scorer's last check.
        previous = max(current - 1, 0)
        before, after = rank_for(previous), rank_for(current)
        scorers.append({
            'taster_id': row['taster_id'],
            'taster_name': names.get(row['taster_id']),
            'score': row['score'],
            'notes': row.get('notes'),
            'tasting_count': current,
            'rank': after.to_dict(),
        })
        if before.key != after.key:
            level_ups.append({
                'taster_id': row['taster_id'],
                'taster_name': names.get(row['taster_id']),
                'old_rank': before.to_dict(),
                'new_rank': after.to_dict(),
                'tasting_count': current,
            })

    values = [row['score'] for row in scores if row.get('score') is not None]
    return {
        'success': True,
        'tasting': tasting,
        'sake': sake,
        'scores': scorers,
        'score_count': len(values),
        'average_score': round(mean(values), 2) if values else None,
        'level_ups': level_ups,
        'tasting_url': ctx.tasting_url(tasting['id']),
    }


def _apply_update(supabase, table: str, record_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    if not updates:
        raise ToolExecutionError("No fields to update")
    updated = _first(supabase.table(table).update(updates).eq('id', record_id).execute())
    if updated is None:
        raise ToolExecutionError(f"No {table} record with id {record_id}")
    return updated


def admin_edit_sake(ctx: ToolContext, args: AdminEditSakeArgs) -> Dict[str, Any]:
    sake = _apply_update(ctx.supabase, 'sakes', args.sake_id, args.model_dump(exclude_none=True, exclude={'sake_id'}))
    return {'success': True, 'sake': sake}


def admin_edit_taster(ctx: ToolContext, args: AdminEditTasterArgs) -> Dict[str, Any]:
    taster = _apply_update(
        ctx.supabase, 'tasters', args.taster_id, args.model_dump(exclude_none=True, exclude={'taster_id'})
    )
    return {'success': True, 'taster': taster}


def admin_edit_tasting(ctx: ToolContext, args: AdminEditTastingArgs) -> Dict[str, Any]:
    updates = args.model_dump(exclude_none=True, exclude={'tasting_id', 'scores'})
    if not updates and not args.scores:
        raise ToolExecutionError("No fields to update")

    tasting = _apply_update(ctx.supabase, 'tastings', args.tasting_id, updates) if updates \
        else _require(ctx.supabase, 'tastings', args.tasting_id)

    scores = []
    for entry in args.scores or []:
        scores.append(_first(ctx.supabase.table('scores').upsert({
            'tasting_id': args.tasting_id,
            'taster_id': entry.taster_id,
            'score': entry.score,
            'notes': entry.notes,
        }, on_conflict='tasting_id,taster_id').execute()))

    return {'success': True, 'tasting': tasting, 'scores': scores}


def admin_delete_record(ctx: ToolContext, args: AdminDeleteArgs) -> Dict[str, Any]:
    # No cascade: scores or tastings pointing at the deleted row are left in place.
    result = ctx.supabase.table(args.table).delete().eq('id', args.id).execute()
    deleted = len(result.data or [])
    logger.info(f"[{ctx.request_id}] Admin deleted {deleted} row(s) from {args.table} (id={args.id})")
    return {'success': deleted > 0, 'table': args.table, 'id': args.id, 'deleted': deleted}


def admin_list_records(ctx: ToolContext, args: AdminListArgs) -> Dict[str, Any]:
    query = ctx.supabase.table(args.table).select('*')
    for column, value in (args.filters or {}).items():
        if not COLUMN_NAME.match(column):
            raise ToolExecutionError(f"Invalid filter column: {column}")
        query = query.eq(column, value)

    result = query.order('created_at', desc=True).limit(args.limit or DEFAULT_ADMIN_LIST_LIMIT).execute()
    records = result.data or []
    return {'success': True, 'table': args.table, 'records': records, 'count': len(records)}


# Registry

@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    args_model: Type[BaseModel]
    execute: Callable[[ToolContext, Any], Dict[str, Any]]
    admin_only: bool = False

    def definition(self) -> Dict[str, Any]:
        return {
            'type': 'function',
            'function': {
                'name': self.name,
                'description': self.description,
                'parameters': self.args_model.model_json_schema(),
            },
        }


TOOLS: List[Tool] = [
    Tool('send_message',
         'Send a short WhatsApp message to the user immediately, e.g. a status update while you work. '
         'Do not use it for your final answer; that is sent automatically.',
         SendMessageArgs, send_message),
    Tool('identify_sake',
         'Search for an existing sake by name or create a new one. Use this when the user sends a photo '
         'or description of a sake bottle.',
         IdentifySakeArgs, identify_sake),
    Tool('create_tasting',
         'Create a new tasting session for a sake. Use this after identifying a sake when the user is ready '
         'to taste. Returns a tasting_url to share.',
         CreateTastingArgs, create_tasting),
    Tool('record_scores',
         'Record scores (0-10) from one or more tasters for a tasting. Tasters are found or created by name '
         'or phone number.',
         RecordScoresArgs, record_scores),
    Tool('lookup_taster',
         'Find an existing taster by phone number or name, or create a new one.',
         LookupTasterArgs, lookup_taster),
    Tool('get_tasting_history',
         'Get past tasting sessions, newest first, optionally filtered by sake or taster.',
         TastingHistoryArgs, get_tasting_history),
    Tool('get_sake_rankings',
         'Get the sake leaderboard with average scores and number of tastings.',
         SakeRankingsArgs, get_sake_rankings),
    Tool('get_taster_rank',
         "Get a taster's rank, the number of different sakes they have tasted and progress to the next rank.",
         TasterRankArgs, get_taster_rank),
    Tool('get_tasting_summary',
         'Summarize a tasting: scores, average, and which tasters reached a new rank with it.',
         TastingSummaryArgs, get_tasting_summary),
    Tool('admin_edit_sake', 'Admin: update fields on a sake by ID.',
         AdminEditSakeArgs, admin_edit_sake, admin_only=True),
    Tool('admin_edit_taster', 'Admin: update fields on a taster by ID.',
         AdminEditTasterArgs, admin_edit_taster, admin_only=True),
    Tool('admin_edit_tasting', 'Admin: update tasting details and/or set scores on it.',
         AdminEditTastingArgs, admin_edit_tasting, admin_only=True),
    Tool('admin_delete_record', 'Admin: delete a record from sakes, tasters, tastings or scores by ID.',
         AdminDeleteArgs, admin_delete_record, admin_only=True),
    Tool('admin_list_records', 'Admin: list records from sakes, tasters, tastings or scores with optional filters.',
         AdminListArgs, admin_list_records, admin_only=True),
]


class ToolRegistry:
    def __init__(self, context: ToolContext, is_admin: bool = False):
        self.context = context
        self.tools = {tool.name: tool for tool in TOOLS if is_admin or not tool.admin_only}

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self.tools.values()]

    async def execute(self, name: str, raw_arguments: Optional[str]) -> ToolOutcome:
        request_id = self.context.request_id
        tool = self.tools.get(name)
        if tool is None:
            logger.warning(f"[{request_id}] Model called unavailable tool {name}")
            return ToolOutcome({'success': False, 'error': f"Unknown tool: {name}"}, is_error=True)

        try:
            arguments = json.loads(raw_arguments or '{}')
            if not isinstance(arguments, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            logger.warning(f"[{request_id}] Malformed arguments for {name}: {str(e)}")
            return ToolOutcome({'success': False, 'error': f"Invalid arguments: {str(e)}"}, is_error=True)

        try:
            args = tool.args_model.model_validate(arguments)
        except ValidationError as e:
            logger.warning(f"[{request_id}] Invalid arguments for {name}: {str(e)}")
            return ToolOutcome(
                {'success': False, 'error': f"Invalid arguments: {str(e)}"}, is_error=True, arguments=arguments
            )

        logger.info(f"[{request_id}] Executing tool {name} with {arguments}")
        try:
            result = await asyncio.get_running_loop().run_in_executor(
                TOOL_EXECUTOR, tool.execute, self.context, args
            )
        except Exception as e:
            logger.error(f"[{request_id}] Tool {name} failed: {str(e)}", exc_info=True)
            return ToolOutcome({'success': False, 'error': str(e)}, is_error=True, arguments=arguments)

        logger.info(f"[{request_id}] Tool {name} succeeded: {json.dumps(result, default=str)[:200]}")
        return ToolOutcome(result, arguments=arguments)
