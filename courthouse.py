from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import uuid
import weakref
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import IntEnum, StrEnum, auto
from logging.handlers import RotatingFileHandler
from typing import (
    Any,
    AsyncGenerator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

import aiofiles
import aiofiles.os
import cachetools
import interactions
import orjson
from interactions.api.events import ExtensionUnload, MemberAdd
from interactions.client.errors import HTTPException

BASE_DIR: str = os.path.dirname(os.path.realpath(__file__))
LOG_FILE: str = os.path.join(BASE_DIR, "courthouse.log")

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
formatter = logging.Formatter(
    "%(asctime)s | %(process)d:%(thread)d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
    "%Y-%m-%d %H:%M:%S.%f %z",
)
file_handler = RotatingFileHandler(
    LOG_FILE, maxBytes=1024 * 1024, backupCount=1, encoding="utf-8"
)
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)

T = TypeVar("T")


# Schema


class Config:
    DATA_DIR: str = os.path.join(BASE_DIR, "guilds")
    STORE_TIMEOUT: float = 5.0
    PLATFORM_TIMEOUT: float = 5.0
    LOCK_TIMEOUT: float = 10.0
    CACHE_SIZE: int = 1000
    CACHE_TTL: int = 3600
    MAX_REASON_LENGTH: int = 1000
    MAX_VERDICT_LENGTH: int = 1000
    ROOM_NAME_FORMAT: str = "lawsuit-{short_id}"
    UNASSIGNED_ROOM: int = 0
    LOCK_ROOM_ON_VERDICT: bool = True


class LawsuitStatus(StrEnum):
    ACTIVE = auto()
    CLOSED = auto()


class EmbedColor(IntEnum):
    ERROR = 0xE81123
    WARN = 0xFFB900
    INFO = 0x0078D7


class CourtError(Exception):
    """Base for every failure a command can report back to the invoking member.

    The message is user facing, so it must never carry internal detail.
    """

    default_message: str = "The request could not be completed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class UnconfiguredError(CourtError):
    default_message = "This server has not been configured for that yet."


class InvalidTargetError(CourtError):
    default_message = "That is not a valid target."


class NoActiveLawsuitError(CourtError):
    default_message = "There is no active lawsuit in this room."


class ForbiddenError(CourtError):
    default_message = "You do not have permission to do that."


class PlatformUnavailableError(CourtError):
    default_message = "Discord did not accept the request. Please try again later."


class PersistenceUnavailableError(CourtError):
    default_message = "The court records are unavailable right now. Please try again later."


@dataclass
class CourtRoom:
    channel_id: int

    def __post_init__(self):
        if self.channel_id <= 0:
            raise ValueError("Invalid court room channel ID")


@dataclass
class Lawsuit:
    plaintiff_id: int
    accused_id: int
    judge_id: int
    reason: str
    plaintiff_lawyer_id: Optional[int] = None
    accused_lawyer_id: Optional[int] = None
    verdict: Optional[str] = None
    court_room_id: int = Config.UNASSIGNED_ROOM
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.plaintiff_id <= 0:
            raise ValueError("Invalid plaintiff ID")
        if self.accused_id <= 0:
            raise ValueError("Invalid accused ID")
        if self.judge_id <= 0:
            raise ValueError("Invalid judge ID")
        if self.plaintiff_lawyer_id is not None and self.plaintiff_lawyer_id <= 0:
            raise ValueError("Invalid plaintiff lawyer ID")
        if self.accused_lawyer_id is not None and self.accused_lawyer_id <= 0:
            raise ValueError("Invalid accused lawyer ID")
        if not self.reason:
            raise ValueError("Invalid reason")
        if self.court_room_id < 0:
            raise ValueError("Invalid court room ID")
        if not self.id:
            raise ValueError("Invalid lawsuit ID")

    @property
    def is_active(self) -> bool:
        return self.verdict is None

    @property
    def status(self) -> LawsuitStatus:
        return LawsuitStatus.ACTIVE if self.is_active else LawsuitStatus.CLOSED

    @property
    def participants(self) -> Set[int]:
        return {
            uid
            for uid in (
                self.plaintiff_id,
                self.accused_id,
                self.judge_id,
                self.plaintiff_lawyer_id,
                self.accused_lawyer_id,
            )
            if uid is not None
        }

    def occupies(self, room_id: int) -> bool:
        return self.is_active and self.court_room_id == room_id


@dataclass
class GuildState:
    guild_id: int
    court_category_id: Optional[int] = None
    confinement_role_id: Optional[int] = None
    court_rooms: List[CourtRoom] = field(default_factory=list)
    lawsuits: List[Lawsuit] = field(default_factory=list)
    confined_members: Set[int] = field(default_factory=set)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.guild_id <= 0:
            raise ValueError("Invalid guild ID")
        if self.court_category_id is not None and self.court_category_id <= 0:
            raise ValueError("Invalid court category ID")
        if self.confinement_role_id is not None and self.confinement_role_id <= 0:
            raise ValueError("Invalid confinement role ID")
        if any(uid <= 0 for uid in self.confined_members):
            raise ValueError("Invalid confined member ID")

        occupied = [
            lawsuit.court_room_id
            for lawsuit in self.lawsuits
            if lawsuit.is_active and lawsuit.court_room_id != Config.UNASSIGNED_ROOM
        ]
        if len(occupied) != len(set(occupied)):
            raise ValueError("A court room hosts more than one active lawsuit")

    def active_lawsuit(self, room_id: int) -> Optional[Lawsuit]:
        return next((s for s in self.lawsuits if s.occupies(room_id)), None)

    def court_room(self, room_id: int) -> Optional[CourtRoom]:
        return next((r for r in self.court_rooms if r.channel_id == room_id), None)


@dataclass(frozen=True)
class Actor:
    id: int
    can_manage_guild: bool = False


@dataclass(frozen=True)
class MemberJoined:
    guild_id: int
    user_id: int


@dataclass(frozen=True)
class CommandInvoked:
    guild_id: int
    actor: Actor
    command: str
    subcommand: str
    channel_id: int
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Reply:
    message: str
    ok: bool = True


def sanitize_text(text: str, max_length: int = 2000) -> str:
    return (text and re.sub(r"\s+", " ", text).strip()[:max_length]) or ""


class Store:
    """One orjson document per guild, cached in front of the filesystem."""

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.data_dir = data_dir or Config.DATA_DIR
        self.store_initialized = False
        self.store_lock = asyncio.Lock()
        self.store_cache = cachetools.TTLCache(
            maxsize=Config.CACHE_SIZE, ttl=Config.CACHE_TTL
        )

    async def initialize_store(self) -> None:
        if self.store_initialized:
            return

        async with self.store_lock:
            if not self.store_initialized:
                try:
                    await asyncio.to_thread(os.makedirs, self.data_dir, 0o755, True)
                    self.store_initialized = True
                except OSError as e:
                    logger.critical("Failed to initialize store: %s", repr(e))
                    raise RuntimeError(
                        f"Store initialization failed: {e.__class__.__name__}"
                    ) from e

    def document_path(self, guild_id: int) -> str:
        return os.path.join(self.data_dir, f"{guild_id}.json")

    async def read_document(self, guild_id: int) -> Optional[Dict[str, Any]]:
        if (document := self.store_cache.get(guild_id)) is not None:
            return document

        path = self.document_path(guild_id)
        if not await aiofiles.os.path.exists(path):
            return None
        try:
            async with aiofiles.open(path, mode="rb") as f:
                raw = orjson.loads(await f.read())
            if not isinstance(raw, dict):
                raise ValueError(f"Expected a JSON object, got {type(raw).__name__}")
            document = self.deserialize_data(raw)
            self.store_cache[guild_id] = document
            return document
        except Exception as e:
            logger.exception("Failed to read guild %s: %s", guild_id, e)
            raise

    def prepare_for_serialization(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            k: (
                sorted(v)
                if isinstance(v, set)
                else (
                    self.prepare_for_serialization(v)
                    if isinstance(v, dict)
                    else (
                        [
                            (
                                self.prepare_for_serialization(i)
                                if isinstance(i, dict)
                                else i
                            )
                            for i in v
                        ]
                        if isinstance(v, (list, tuple))
                        else v
                    )
                )
            )
            for k, v in data.items()
        }

    def deserialize_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        set_keys = {"confined_members"}
        return {
            k: (
                set(v)
                if k in set_keys and isinstance(v, list)
                else (
                    self.deserialize_data(v)
                    if isinstance(v, dict)
                    else (
                        [
                            self.deserialize_data(i) if isinstance(i, dict) else i
                            for i in v
                        ]
                        if isinstance(v, list)
                        else v
                    )
                )
            )
            for k, v in data.items()
        }

    async def write_document(self, guild_id: int, document: Dict[str, Any]) -> None:
        serializable = self.prepare_for_serialization(document)
        path = self.document_path(guild_id)
        staging_path = f"{path}.tmp"
        self.store_cache[guild_id] = document

        try:
            async with aiofiles.open(staging_path, mode="wb") as f:
                await f.write(orjson.dumps(serializable))
            await aiofiles.os.replace(staging_path, path)
        except Exception as e:
            self.store_cache.pop(guild_id, None)
            logger.exception("Failed to persist guild %s: %s", guild_id, e)
            raise

    async def delete_document(self, guild_id: int) -> None:
        try:
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(self.document_path(guild_id))
            self.store_cache.pop(guild_id, None)
        except Exception as e:
            logger.exception("Failed to remove guild %s: %s", guild_id, e)
            raise


class Repo:
    def __init__(self, store: Optional[Store] = None) -> None:
        self.store = store or Store()
        self.guild_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self.lock_creation_lock = asyncio.Lock()
        self.repo_initialized = False
        self.cleanup_task: Optional[asyncio.Task[None]] = None

    async def initialize_repo(self) -> None:
        if self.repo_initialized:
            return
        await self.store.initialize_store()
        self.cleanup_task = asyncio.create_task(self.clean_up(), name="_expire_caches")
        self.repo_initialized = True

    async def clean_up(self) -> None:
        while True:
            try:
                await asyncio.sleep(300)
                self.store.store_cache.expire()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Cache cleanup failed: {e}")
                await asyncio.sleep(60)

    async def ensure_init(self) -> None:
        if not self.repo_initialized:
            await self.initialize_repo()

    async def close(self) -> None:
        if self.cleanup_task and not self.cleanup_task.done():
            self.cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.cleanup_task
        self.repo_initialized = False

    # Locking

    async def get_or_create_lock(self, guild_id: int) -> asyncio.Lock:
        async with self.lock_creation_lock:
            return self.guild_locks.setdefault(guild_id, asyncio.Lock())

    @contextlib.asynccontextmanager
    async def acquire_guild_lock(self, guild_id: int) -> AsyncGenerator[None, None]:
        lock = await self.get_or_create_lock(guild_id)
        try:
            async with asyncio.timeout(Config.LOCK_TIMEOUT):
                await lock.acquire()
        except TimeoutError as e:
            logger.error(
                "Failed to acquire guild lock within timeout period",
                extra={"guild_id": guild_id},
            )
            raise PersistenceUnavailableError() from e
        try:
            yield
        finally:
            lock.release()

    # Documents

    @staticmethod
    def build_state(document: Dict[str, Any]) -> GuildState:
        return GuildState(
            guild_id=document["guild_id"],
            court_category_id=document.get("court_category_id"),
            confinement_role_id=document.get("confinement_role_id"),
            court_rooms=[CourtRoom(**r) for r in document.get("court_rooms", ())],
            lawsuits=[Lawsuit(**s) for s in document.get("lawsuits", ())],
            confined_members=set(document.get("confined_members", ())),
        )

    async def load_state(self, guild_id: int) -> Optional[GuildState]:
        try:
            async with asyncio.timeout(Config.STORE_TIMEOUT):
                document = await self.store.read_document(guild_id)
            return self.build_state(document) if document is not None else None
        except (OSError, TimeoutError, ValueError, TypeError, KeyError) as e:
            logger.error(
                "Guild state unavailable: %s",
                type(e).__name__,
                extra={"guild_id": guild_id},
            )
            raise PersistenceUnavailableError() from e

    async def save_state(self, state: GuildState) -> None:
        state.validate()
        try:
            async with asyncio.timeout(Config.STORE_TIMEOUT):
                await self.store.write_document(state.guild_id, asdict(state))
        except (OSError, TimeoutError) as e:
            raise PersistenceUnavailableError() from e

    async def modify_state(
        self, guild_id: int, mutate: Callable[[GuildState], T]
    ) -> T:
        """Apply ``mutate`` to the guild's state and persist it atomically.

        If ``mutate`` raises, nothing is written.
        """
        await self.ensure_init()
        async with self.acquire_guild_lock(guild_id):
            state = await self.load_state(guild_id) or GuildState(guild_id=guild_id)
            result = mutate(state)
            await self.save_state(state)
            return result

    # Gateway contract

    async def find_or_insert_state(self, guild_id: int) -> GuildState:
        await self.ensure_init()
        async with self.acquire_guild_lock(guild_id):
            if state := await self.load_state(guild_id):
                return state
            state = GuildState(guild_id=guild_id)
            await self.save_state(state)
            logger.debug("Created guild state", extra={"guild_id": guild_id})
            return state

    async def set_court_category(self, guild_id: int, category_id: int) -> None:
        def mutate(state: GuildState) -> None:
            state.court_category_id = category_id

        await self.modify_state(guild_id, mutate)

    async def set_confinement_role(self, guild_id: int, role_id: int) -> None:
        def mutate(state: GuildState) -> None:
            state.confinement_role_id = role_id

        await self.modify_state(guild_id, mutate)

    async def append_lawsuit_and_room(
        self, guild_id: int, lawsuit: Lawsuit, room: CourtRoom
    ) -> None:
        def mutate(state: GuildState) -> None:
            if not state.court_room(room.channel_id):
                state.court_rooms.append(room)
            state.lawsuits.append(lawsuit)

        await self.modify_state(guild_id, mutate)

    async def update_lawsuit_verdict(
        self,
        guild_id: int,
        room_id: int,
        verdict: str,
        lawsuit_id: Optional[str] = None,
    ) -> Lawsuit:
        def mutate(state: GuildState) -> Lawsuit:
            lawsuit = state.active_lawsuit(room_id)
            if lawsuit is None or (lawsuit_id and lawsuit.id != lawsuit_id):
                raise NoActiveLawsuitError()
            lawsuit.verdict = verdict
            return lawsuit

        return await self.modify_state(guild_id, mutate)

    async def add_confinement_entry(self, guild_id: int, user_id: int) -> bool:
        def mutate(state: GuildState) -> bool:
            added = user_id not in state.confined_members
            state.confined_members.add(user_id)
            return added

        return await self.modify_state(guild_id, mutate)

    async def remove_confinement_entry(self, guild_id: int, user_id: int) -> bool:
        def mutate(state: GuildState) -> bool:
            removed = user_id in state.confined_members
            state.confined_members.discard(user_id)
            return removed

        return await self.modify_state(guild_id, mutate)

    async def find_confinement_entry(
        self, guild_id: int, user_id: int
    ) -> Optional[int]:
        await self.ensure_init()
        state = await self.load_state(guild_id)
        return user_id if state and user_id in state.confined_members else None

    async def delete_guild_state(self, guild_id: int) -> None:
        await self.ensure_init()
        async with self.acquire_guild_lock(guild_id):
            try:
                async with asyncio.timeout(Config.STORE_TIMEOUT):
                    await self.store.delete_document(guild_id)
            except (OSError, TimeoutError) as e:
                raise PersistenceUnavailableError() from e


# View


class View:

    @staticmethod
    def create_embed(
        title: str,
        description: str = "",
        color: EmbedColor = EmbedColor.INFO,
        guild: Optional[interactions.Guild] = None,
    ) -> interactions.Embed:
        return interactions.Embed(
            title=title,
            description=description,
            color=int(color.value),
            timestamp=interactions.Timestamp.fromdatetime(datetime.now(timezone.utc)),
            footer=(
                interactions.EmbedFooter(
                    text=guild.name,
                    icon_url=str(guild.icon.url) if guild.icon else None,
                )
                if guild
                else None
            ),
        )

    async def send_response(
        self,
        ctx: interactions.InteractionContext,
        title: str,
        message: str,
        color: EmbedColor,
    ) -> None:
        await ctx.send(
            embed=self.create_embed(title, message, color, ctx.guild),
            ephemeral=True,
        )

    async def send_error(
        self, ctx: interactions.InteractionContext, message: str
    ) -> None:
        await self.send_response(ctx, "Error", message, EmbedColor.ERROR)

    async def send_success(
        self, ctx: interactions.InteractionContext, message: str
    ) -> None:
        await self.send_response(ctx, "Success", message, EmbedColor.INFO)

    @staticmethod
    def summary_fields(lawsuit: Lawsuit) -> Dict[str, str]:
        fields = {
            "Judge": f"<@{lawsuit.judge_id}>",
            "Plaintiff": f"<@{lawsuit.plaintiff_id}>",
            "Accused": f"<@{lawsuit.accused_id}>",
            "Plaintiff's Lawyer": (
                f"<@{lawsuit.plaintiff_lawyer_id}>"
                if lawsuit.plaintiff_lawyer_id
                else "None"
            ),
            "Accused's Lawyer": (
                f"<@{lawsuit.accused_lawyer_id}>" if lawsuit.accused_lawyer_id else "None"
            ),
            "Reason": lawsuit.reason,
            "Status": lawsuit.status.value.title(),
        }
        if lawsuit.verdict:
            fields["Verdict"] = lawsuit.verdict
        return fields

    def create_summary_embed(self, lawsuit: Lawsuit) -> interactions.Embed:
        embed = self.create_embed(f"Lawsuit {lawsuit.id[:8]}")
        embed.add_fields(
            *[
                interactions.EmbedField(name=k, value=v, inline=k != "Reason")
                for k, v in self.summary_fields(lawsuit).items()
            ]
        )
        return embed


# Gateway


class Gateway:
    """Platform side of the court: rooms, roles and category lookups."""

    def __init__(self, bot: interactions.Client) -> None:
        self.bot = bot

    @contextlib.asynccontextmanager
    async def platform_call(
        self, operation: str, **context: Any
    ) -> AsyncGenerator[None, None]:
        try:
            async with asyncio.timeout(Config.PLATFORM_TIMEOUT):
                yield
        except (HTTPException, TimeoutError) as e:
            logger.warning(
                "Platform call failed",
                extra={"operation": operation, **context},
                exc_info=True,
            )
            raise PlatformUnavailableError() from e

    async def fetch_guild(self, guild_id: int) -> interactions.Guild:
        if not (guild := await self.bot.fetch_guild(guild_id)):
            raise PlatformUnavailableError("The server could not be resolved.")
        return guild

    async def fetch_member(self, guild_id: int, user_id: int) -> interactions.Member:
        guild = await self.fetch_guild(guild_id)
        if not (member := await guild.fetch_member(user_id)):
            raise PlatformUnavailableError(f"<@{user_id}> is not a member of this server.")
        return member

    async def create_restricted_room(
        self,
        guild_id: int,
        category_id: int,
        name: str,
        allowed_member_ids: Set[int],
        topic: str = "",
    ) -> int:
        async with self.platform_call(
            "create_restricted_room", guild_id=guild_id, category_id=category_id
        ):
            guild = await self.fetch_guild(guild_id)
            overwrites = [
                interactions.PermissionOverwrite(
                    id=interactions.Snowflake(guild_id),
                    type=interactions.OverwriteType.ROLE,
                    deny=interactions.Permissions.VIEW_CHANNEL,
                ),
                *(
                    interactions.PermissionOverwrite(
                        id=interactions.Snowflake(member_id),
                        type=interactions.OverwriteType.MEMBER,
                        allow=interactions.Permissions.VIEW_CHANNEL
                        | interactions.Permissions.SEND_MESSAGES,
                    )
                    for member_id in sorted(allowed_member_ids)
                ),
            ]
            channel = await guild.create_text_channel(
                name=name,
                topic=topic,
                category=category_id,
                permission_overwrites=overwrites,
                reason="Court room for a new lawsuit",
            )
            logger.debug(
                "Court room created",
                extra={"guild_id": guild_id, "channel_id": int(channel.id)},
            )
            return int(channel.id)

    async def assign_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        async with self.platform_call(
            "assign_role", guild_id=guild_id, user_id=user_id, role_id=role_id
        ):
            member = await self.fetch_member(guild_id, user_id)
            await member.add_role(role_id, reason="Imprisoned")

    async def revoke_role(self, guild_id: int, user_id: int, role_id: int) -> None:
        async with self.platform_call(
            "revoke_role", guild_id=guild_id, user_id=user_id, role_id=role_id
        ):
            member = await self.fetch_member(guild_id, user_id)
            await member.remove_role(role_id, reason="Released")

    async def resolve_category(self, channel_id: int) -> int:
        async with self.platform_call("resolve_category", channel_id=channel_id):
            channel = await self.bot.fetch_channel(channel_id)
            if not isinstance(channel, interactions.GuildCategory):
                raise InvalidTargetError("That is not a category.")
            return int(channel.id)

    async def lock_room(self, room_id: int, member_ids: Set[int]) -> None:
        async with self.platform_call("lock_room", channel_id=room_id):
            if not (channel := await self.bot.fetch_channel(room_id)):
                raise PlatformUnavailableError("The court room no longer exists.")
            await asyncio.gather(
                *(
                    channel.edit_permission(
                        interactions.PermissionOverwrite(
                            id=interactions.Snowflake(member_id),
                            type=interactions.OverwriteType.MEMBER,
                            allow=interactions.Permissions.VIEW_CHANNEL,
                            deny=interactions.Permissions.SEND_MESSAGES,
                        ),
                        reason="Verdict ruled",
                    )
                    for member_id in sorted(member_ids)
                )
            )

    async def send_embed(self, channel_id: int, embed: interactions.Embed) -> None:
        async with self.platform_call("send_embed", channel_id=channel_id):
            if not (channel := await self.bot.fetch_channel(channel_id)):
                raise PlatformUnavailableError("The channel no longer exists.")
            await channel.send(
                embeds=[embed], allowed_mentions=interactions.AllowedMentions.none()
            )


# Service


def require_authority(actor: Actor) -> None:
    if not actor.can_manage_guild:
        raise ForbiddenError()


class LawsuitManager:
    def __init__(self, repo: Repo, gateway: Gateway) -> None:
        self.repo = repo
        self.gateway = gateway
        self.view = View()

    async def create(
        self,
        guild_id: int,
        actor: Actor,
        plaintiff_id: int,
        accused_id: int,
        judge_id: int,
        reason: str,
        plaintiff_lawyer_id: Optional[int] = None,
        accused_lawyer_id: Optional[int] = None,
    ) -> Lawsuit:
        require_authority(actor)
        if not (reason := sanitize_text(reason, Config.MAX_REASON_LENGTH)):
            raise InvalidTargetError("A lawsuit needs a reason.")

        state = await self.repo.find_or_insert_state(guild_id)
        if state.court_category_id is None:
            raise UnconfiguredError(
                "No court category is set. Use `/lawsuit set_category` first."
            )

        lawsuit = Lawsuit(
            plaintiff_id=plaintiff_id,
            accused_id=accused_id,
            judge_id=judge_id,
            reason=reason,
            plaintiff_lawyer_id=plaintiff_lawyer_id,
            accused_lawyer_id=accused_lawyer_id,
        )

        # The record is written only once the room exists.
        lawsuit.court_room_id = await self.gateway.create_restricted_room(
            guild_id,
            state.court_category_id,
            name=Config.ROOM_NAME_FORMAT.format(short_id=lawsuit.id[:8]),
            allowed_member_ids=lawsuit.participants,
            topic=reason[:1024],
        )
        await self.repo.append_lawsuit_and_room(
            guild_id, lawsuit, CourtRoom(channel_id=lawsuit.court_room_id)
        )

        logger.info(
            "Lawsuit created",
            extra={
                "guild_id": guild_id,
                "lawsuit_id": lawsuit.id,
                "channel_id": lawsuit.court_room_id,
                "moderator_id": actor.id,
            },
        )

        try:
            await self.gateway.send_embed(
                lawsuit.court_room_id, self.view.create_summary_embed(lawsuit)
            )
        except PlatformUnavailableError:
            logger.warning(
                "Failed to send lawsuit summary", extra={"lawsuit_id": lawsuit.id}
            )

        return lawsuit

    async def set_court_category(
        self, guild_id: int, actor: Actor, channel_id: int
    ) -> int:
        require_authority(actor)
        category_id = await self.gateway.resolve_category(channel_id)
        await self.repo.set_court_category(guild_id, category_id)
        logger.info(
            "Court category set",
            extra={"guild_id": guild_id, "category_id": category_id},
        )
        return category_id

    async def close(
        self,
        guild_id: int,
        actor: Actor,
        room_id: int,
        verdict: str,
        permission_override: bool,
    ) -> Lawsuit:
        if not (verdict := sanitize_text(verdict, Config.MAX_VERDICT_LENGTH)):
            raise InvalidTargetError("A verdict cannot be empty.")

        state = await self.repo.find_or_insert_state(guild_id)
        if state.court_room(room_id) is None:
            raise NoActiveLawsuitError("This channel is not a court room.")
        if not (lawsuit := state.active_lawsuit(room_id)):
            raise NoActiveLawsuitError()

        if actor.id != lawsuit.judge_id and not permission_override:
            raise ForbiddenError("Only the judge of this lawsuit can rule a verdict.")

        # A concurrent close of the same lawsuit loses here with NoActiveLawsuitError.
        closed = await self.repo.update_lawsuit_verdict(
            guild_id, room_id, verdict, lawsuit_id=lawsuit.id
        )

        logger.info(
            "Lawsuit closed",
            extra={
                "guild_id": guild_id,
                "lawsuit_id": closed.id,
                "channel_id": room_id,
                "moderator_id": actor.id,
            },
        )

        if Config.LOCK_ROOM_ON_VERDICT:
            try:
                await self.gateway.lock_room(
                    room_id, closed.participants - {closed.judge_id}
                )
            except PlatformUnavailableError as e:
                raise PlatformUnavailableError(
                    "The verdict was recorded, but the court room could not be locked."
                ) from e

        return closed

    async def clear(self, guild_id: int, actor: Actor) -> None:
        require_authority(actor)
        await self.repo.delete_guild_state(guild_id)
        logger.warning(
            "Guild court data cleared",
            extra={"guild_id": guild_id, "moderator_id": actor.id},
        )


class ConfinementManager:
    """Keeps the prison role attached to every member with a confinement entry.

    The entry is the source of truth. The role is applied after the entry is
    written, and is re-applied whenever a confined member joins the guild
    again, so a failed or lost role assignment heals itself.
    """

    def __init__(self, repo: Repo, gateway: Gateway) -> None:
        self.repo = repo
        self.gateway = gateway

    async def set_confinement_role(
        self, guild_id: int, actor: Actor, role_id: int
    ) -> None:
        require_authority(actor)
        await self.repo.set_confinement_role(guild_id, role_id)
        logger.info(
            "Confinement role set", extra={"guild_id": guild_id, "role_id": role_id}
        )

    async def require_role(self, guild_id: int) -> int:
        state = await self.repo.find_or_insert_state(guild_id)
        if state.confinement_role_id is None:
            raise UnconfiguredError(
                "No prison role is set. Use `/prison set_role` first."
            )
        return state.confinement_role_id

    async def arrest(self, guild_id: int, actor: Actor, user_id: int) -> bool:
        require_authority(actor)
        role_id = await self.require_role(guild_id)

        added = await self.repo.add_confinement_entry(guild_id, user_id)
        logger.info(
            "Member imprisoned",
            extra={"guild_id": guild_id, "user_id": user_id, "moderator_id": actor.id},
        )

        try:
            await self.gateway.assign_role(guild_id, user_id, role_id)
        except PlatformUnavailableError as e:
            raise PlatformUnavailableError(
                f"<@{user_id}> is recorded as imprisoned, but the prison role could not "
                "be applied. It will be applied when they rejoin."
            ) from e
        return added

    async def release(self, guild_id: int, actor: Actor, user_id: int) -> bool:
        require_authority(actor)
        role_id = await self.require_role(guild_id)

        # Removing the entry first means a failed revoke can only leave a
        # stale role behind, never a confinement that returns on rejoin.
        removed = await self.repo.remove_confinement_entry(guild_id, user_id)
        logger.info(
            "Member released",
            extra={"guild_id": guild_id, "user_id": user_id, "moderator_id": actor.id},
        )

        try:
            await self.gateway.revoke_role(guild_id, user_id, role_id)
        except PlatformUnavailableError as e:
            raise PlatformUnavailableError(
                f"<@{user_id}> is released, but the prison role could not be removed. "
                "Please remove it manually."
            ) from e
        return removed

    async def reconcile_member(self, event: MemberJoined) -> bool:
        state = await self.repo.find_or_insert_state(event.guild_id)
        if state.confinement_role_id is None:
            return False
        if event.user_id not in state.confined_members:
            return False

        logger.info(
            "Imprisoned member rejoined, reapplying prison role",
            extra={"guild_id": event.guild_id, "user_id": event.user_id},
        )
        await self.gateway.assign_role(
            event.guild_id, event.user_id, state.confinement_role_id
        )
        return True


class Dispatcher:
    def __init__(
        self, lawsuits: LawsuitManager, confinement: ConfinementManager
    ) -> None:
        self.lawsuits = lawsuits
        self.confinement = confinement
        self.command_handlers: Dict[
            Tuple[str, str], Callable[[CommandInvoked], Awaitable[str]]
        ] = {
            ("lawsuit", "create"): self.create_lawsuit,
            ("lawsuit", "set_category"): self.set_court_category,
            ("lawsuit", "close"): self.close_lawsuit,
            ("lawsuit", "clear"): self.clear_guild,
            ("prison", "arrest"): self.arrest,
            ("prison", "release"): self.release,
            ("prison", "set_role"): self.set_confinement_role,
        }

    async def dispatch(self, command: CommandInvoked) -> Reply:
        context = {
            "guild_id": command.guild_id,
            "user_id": command.actor.id,
            "command": f"{command.command} {command.subcommand}",
        }
        if not (handler := self.command_handlers.get((command.command, command.subcommand))):
            logger.warning("Unknown command", extra=context)
            return Reply("Unknown command.", ok=False)

        try:
            return Reply(await handler(command))
        except CourtError as e:
            logger.warning("Command rejected: %s", e, extra=context)
            return Reply(str(e), ok=False)
        except Exception:
            logger.exception("Unexpected error during command execution", extra=context)
            return Reply("An internal error occurred. Please contact support.", ok=False)

    async def create_lawsuit(self, command: CommandInvoked) -> str:
        args = command.arguments
        lawsuit = await self.lawsuits.create(
            command.guild_id,
            command.actor,
            plaintiff_id=args["plaintiff"],
            accused_id=args["accused"],
            judge_id=args["judge"],
            reason=args["reason"],
            plaintiff_lawyer_id=args.get("plaintiff_lawyer"),
            accused_lawyer_id=args.get("accused_lawyer"),
        )
        return f"Lawsuit `{lawsuit.id[:8]}` opened in <#{lawsuit.court_room_id}>."

    async def set_court_category(self, command: CommandInvoked) -> str:
        category_id = await self.lawsuits.set_court_category(
            command.guild_id, command.actor, command.arguments["category"]
        )
        return f"Court rooms will be created under <#{category_id}>."

    async def close_lawsuit(self, command: CommandInvoked) -> str:
        lawsuit = await self.lawsuits.close(
            command.guild_id,
            command.actor,
            command.channel_id,
            command.arguments["verdict"],
            permission_override=command.actor.can_manage_guild,
        )
        return f"Lawsuit `{lawsuit.id[:8]}` closed. Verdict: {lawsuit.verdict}"

    async def clear_guild(self, command: CommandInvoked) -> str:
        await self.lawsuits.clear(command.guild_id, command.actor)
        return "All court data for this server has been deleted."

    async def arrest(self, command: CommandInvoked) -> str:
        user_id = command.arguments["user"]
        if await self.confinement.arrest(command.guild_id, command.actor, user_id):
            return f"<@{user_id}> has been imprisoned."
        return f"<@{user_id}> was already imprisoned. The prison role has been reapplied."

    async def release(self, command: CommandInvoked) -> str:
        user_id = command.arguments["user"]
        if await self.confinement.release(command.guild_id, command.actor, user_id):
            return f"<@{user_id}> has been released."
        return f"<@{user_id}> was not imprisoned. The prison role has been removed anyway."

    async def set_confinement_role(self, command: CommandInvoked) -> str:
        role_id = command.arguments["role"]
        await self.confinement.set_confinement_role(
            command.guild_id, command.actor, role_id
        )
        return f"Imprisoned members will receive <@&{role_id}>."


# Controller


class Court(interactions.Extension):
    def __init__(self, bot: interactions.Client) -> None:
        self.bot: interactions.Client = bot
        self.repo: Repo = Repo()
        self.gateway: Gateway = Gateway(bot)
        self.view: View = View()
        self.dispatcher: Dispatcher = Dispatcher(
            LawsuitManager(self.repo, self.gateway),
            ConfinementManager(self.repo, self.gateway),
        )

    # Listen

    @interactions.listen(MemberAdd)
    async def on_member_join(self, event: MemberAdd) -> None:
        joined = MemberJoined(guild_id=int(event.guild_id), user_id=int(event.member.id))
        try:
            await self.dispatcher.confinement.reconcile_member(joined)
        except CourtError as e:
            logger.warning(
                "Rejoin reconciliation failed: %s",
                e,
                extra={"guild_id": joined.guild_id, "user_id": joined.user_id},
            )
        except Exception:
            logger.exception(
                "Unexpected error during rejoin reconciliation",
                extra={"guild_id": joined.guild_id, "user_id": joined.user_id},
            )

    @interactions.listen(ExtensionUnload)
    async def on_extension_unload(self) -> None:
        await self.repo.close()

    # Commands

    lawsuit_base = interactions.SlashCommand(
        name="lawsuit",
        description="Start and manage lawsuits",
        dm_permission=False,
    )

    prison_base = interactions.SlashCommand(
        name="prison",
        description="Lock members in prison",
        dm_permission=False,
    )

    @lawsuit_base.subcommand("create", sub_cmd_description="Start a new lawsuit")
    @interactions.slash_option(
        name="plaintiff",
        description="The plaintiff",
        opt_type=interactions.OptionType.USER,
        required=True,
    )
    @interactions.slash_option(
        name="accused",
        description="The accused",
        opt_type=interactions.OptionType.USER,
        required=True,
    )
    @interactions.slash_option(
        name="judge",
        description="The judge",
        opt_type=interactions.OptionType.USER,
        required=True,
    )
    @interactions.slash_option(
        name="reason",
        description="The reason for the lawsuit",
        opt_type=interactions.OptionType.STRING,
        required=True,
        min_length=1,
        max_length=Config.MAX_REASON_LENGTH,
    )
    @interactions.slash_option(
        name="plaintiff_lawyer",
        description="The plaintiff's lawyer",
        opt_type=interactions.OptionType.USER,
        required=False,
    )
    @interactions.slash_option(
        name="accused_lawyer",
        description="The accused's lawyer",
        opt_type=interactions.OptionType.USER,
        required=False,
    )
    async def create_lawsuit(
        self,
        ctx: interactions.SlashContext,
        plaintiff: interactions.User,
        accused: interactions.User,
        judge: interactions.User,
        reason: str,
        plaintiff_lawyer: Optional[interactions.User] = None,
        accused_lawyer: Optional[interactions.User] = None,
    ) -> None:
        await self.respond(
            ctx,
            "lawsuit",
            "create",
            plaintiff=int(plaintiff.id),
            accused=int(accused.id),
            judge=int(judge.id),
            reason=reason,
            plaintiff_lawyer=int(plaintiff_lawyer.id) if plaintiff_lawyer else None,
            accused_lawyer=int(accused_lawyer.id) if accused_lawyer else None,
        )

    @lawsuit_base.subcommand(
        "set_category", sub_cmd_description="Set the category for court rooms"
    )
    @interactions.slash_option(
        name="category",
        description="The category",
        opt_type=interactions.OptionType.CHANNEL,
        required=True,
    )
    async def set_category(
        self, ctx: interactions.SlashContext, category: interactions.BaseChannel
    ) -> None:
        await self.respond(ctx, "lawsuit", "set_category", category=int(category.id))

    @lawsuit_base.subcommand(
        "close", sub_cmd_description="Rule a verdict and close the lawsuit in this room"
    )
    @interactions.slash_option(
        name="verdict",
        description="The verdict",
        opt_type=interactions.OptionType.STRING,
        required=True,
        min_length=1,
        max_length=Config.MAX_VERDICT_LENGTH,
    )
    async def close_lawsuit(self, ctx: interactions.SlashContext, verdict: str) -> None:
        await self.respond(ctx, "lawsuit", "close", verdict=verdict)

    @lawsuit_base.subcommand("clear", sub_cmd_description="Delete all court data")
    async def clear_lawsuits(self, ctx: interactions.SlashContext) -> None:
        await self.respond(ctx, "lawsuit", "clear")

    @prison_base.subcommand("arrest", sub_cmd_description="Lock someone up")
    @interactions.slash_option(
        name="user",
        description="The member to imprison",
        opt_type=interactions.OptionType.USER,
        required=True,
    )
    async def arrest(self, ctx: interactions.SlashContext, user: interactions.User) -> None:
        await self.respond(ctx, "prison", "arrest", user=int(user.id))

    @prison_base.subcommand("release", sub_cmd_description="Set someone free")
    @interactions.slash_option(
        name="user",
        description="The member to release",
        opt_type=interactions.OptionType.USER,
        required=True,
    )
    async def release(self, ctx: interactions.SlashContext, user: interactions.User) -> None:
        await self.respond(ctx, "prison", "release", user=int(user.id))

    @prison_base.subcommand("set_role", sub_cmd_description="Set the role for prisoners")
    @interactions.slash_option(
        name="role",
        description="The role",
        opt_type=interactions.OptionType.ROLE,
        required=True,
    )
    async def set_role(self, ctx: interactions.SlashContext, role: interactions.Role) -> None:
        await self.respond(ctx, "prison", "set_role", role=int(role.id))

    # Helper

    @staticmethod
    def actor_of(ctx: interactions.SlashContext) -> Actor:
        return Actor(
            id=int(ctx.author.id),
            can_manage_guild=isinstance(ctx.author, interactions.Member)
            and ctx.author.has_permission(interactions.Permissions.MANAGE_GUILD),
        )

    async def respond(
        self,
        ctx: interactions.SlashContext,
        command: str,
        subcommand: str,
        **arguments: Any,
    ) -> None:
        await ctx.defer(ephemeral=True)
        if ctx.guild_id is None:
            return await self.view.send_error(ctx, "This command only works in a server.")

        reply = await self.dispatcher.dispatch(
            CommandInvoked(
                guild_id=int(ctx.guild_id),
                actor=self.actor_of(ctx),
                command=command,
                subcommand=subcommand,
                channel_id=int(ctx.channel_id),
                arguments=arguments,
            )
        )
        await (self.view.send_success if reply.ok else self.view.send_error)(
            ctx, reply.message
        )
