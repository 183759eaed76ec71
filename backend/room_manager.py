"""Room state machine, room registry and snapshot projection.

Every mutating method here is synchronous: on the asyncio event loop each one
runs to completion before any other event is handled, which is what makes
"first correct answer wins" race-free without a lock around the check.
"""
import re
import time
import uuid
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional

import config
from questions import advance_question, current_question, load_questions, normalize_answer
from round_timer import RoundTimer

logger = logging.getLogger(__name__)

WAITING = "waiting"  # reserved for a pre-round lobby, never entered
ACTIVE = "active"
FINISHED = "finished"

SYSTEM_USER_ID = "system"
SYSTEM_USERNAME = "System"


class ValidationError(ValueError):
    """Join request with a missing or invalid room id, user id or username."""


class UnknownRoom(LookupError):
    pass


class UnknownPlayer(LookupError):
    pass


class AnswerResult(NamedTuple):
    is_correct: bool
    message: dict


def _sanitize_username(username) -> str:
    if not isinstance(username, str):
        return ""
    username = re.sub(r'<[^>]+>', '', username)
    username = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', username)
    return username.strip()


class Room:
    def __init__(self, room_id: str, questions: List[dict]):
        self.room_id = room_id
        self.state = ACTIVE
        self.question: Optional[dict] = None
        self.players: Dict[str, dict] = {}  # user_id -> {userId, username, points}
        self.messages: List[dict] = []
        self.winner_user_id: Optional[str] = None
        self.next_round_at: Optional[int] = None  # epoch ms, advisory for clients
        self.next_round_timer = RoundTimer(name=room_id)
        self.questions = list(questions)
        self.question_index = 0
        self.lock = asyncio.Lock()


def to_snapshot(room: Room) -> dict:
    """Client-safe view of a room. The question answer is never included."""
    snapshot = {
        "roomId": room.room_id,
        "state": room.state,
        "question": {"id": room.question["id"], "text": room.question["text"]} if room.question else None,
        "players": [dict(p) for p in room.players.values()],
        "messages": list(room.messages),
    }
    if room.winner_user_id is not None:
        snapshot["winnerUserId"] = room.winner_user_id
    if room.next_round_at is not None:
        snapshot["nextRoundAt"] = room.next_round_at
    return snapshot


class RoomManager:
    def __init__(self, questions: Optional[List[dict]] = None,
                 id_factory: Optional[Callable[[], str]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 next_round_delay_ms: Optional[int] = None,
                 points_per_answer: Optional[int] = None):
        self.questions = questions if questions is not None else load_questions()
        if not self.questions:
            raise ValueError("Question rotation must not be empty")
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.clock = clock or time.time
        self.next_round_delay_ms = (
            next_round_delay_ms if next_round_delay_ms is not None else config.NEXT_ROUND_DELAY_MS
        )
        self.points_per_answer = (
            points_per_answer if points_per_answer is not None else config.POINTS_PER_CORRECT_ANSWER
        )
        self.rooms: Dict[str, Room] = {}
        # Called as on_round_advanced(room, new_messages) after a scheduled round starts.
        self.on_round_advanced: Optional[Callable[[Room, List[dict]], Awaitable[None]]] = None

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _new_message(self, user_id: str, username: str, content: str) -> dict:
        return {
            "id": self.id_factory(),
            "userId": user_id,
            "username": username,
            "content": content,
            "timestamp": self.now_ms(),
        }

    def add_system_message(self, room: Room, content: str) -> dict:
        msg = self._new_message(SYSTEM_USER_ID, SYSTEM_USERNAME, content)
        room.messages.append(msg)
        return msg

    # --- Registry ---

    def get_or_create(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room:
            return room

        room = Room(room_id, self.questions)
        room.question = current_question(room)
        self.add_system_message(room, "Round started")
        self.add_system_message(room, f"Question: {room.question['text']}")
        self.rooms[room_id] = room
        logger.info("Room %s created (question %s)", room_id, room.question["id"])
        return room

    def get_room(self, room_id) -> Room:
        room = self.rooms.get(room_id) if isinstance(room_id, str) else None
        if room is None:
            raise UnknownRoom(room_id)
        return room

    # --- Players ---

    def join(self, room: Room, user_id: str, username) -> dict:
        username = _sanitize_username(username)
        if not user_id:
            raise ValidationError("userId required")
        if not username:
            raise ValidationError("username required")
        if len(username) > config.MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username must be 1-{config.MAX_USERNAME_LENGTH} characters")

        # Rejoining with the same id starts over at 0 points
        player = {"userId": user_id, "username": username, "points": 0}
        room.players[user_id] = player
        logger.info("Player '%s' joined room %s", username, room.room_id)
        return player

    def join_room(self, room_id, user_id: str, username) -> Room:
        """Validate a join request, then create the room if needed and add the player.

        Nothing is created when validation fails.
        """
        if not isinstance(room_id, str) or not room_id.strip() or not _sanitize_username(username):
            raise ValidationError("roomId and username required")
        if len(room_id) > config.MAX_ROOM_ID_LENGTH:
            raise ValidationError(f"roomId must be at most {config.MAX_ROOM_ID_LENGTH} characters")
        if not user_id:
            raise ValidationError("userId required")
        if len(_sanitize_username(username)) > config.MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username must be 1-{config.MAX_USERNAME_LENGTH} characters")

        room = self.get_or_create(room_id)
        self.join(room, user_id, username)
        return room

    def leave(self, room: Room, user_id: str) -> bool:
        player = room.players.pop(user_id, None)
        if player is None:
            return False
        logger.info("Player '%s' left room %s", player["username"], room.room_id)
        return True

    def leave_all(self, user_id: str) -> List[Room]:
        """Remove the user from every room. Returns the rooms that changed."""
        return [room for room in list(self.rooms.values()) if self.leave(room, user_id)]

    # --- Rounds ---

    def submit_answer(self, room: Room, user_id: str, content: str) -> AnswerResult:
        player = room.players.get(user_id)
        if player is None:
            raise UnknownPlayer(user_id)

        is_correct = (
            room.state == ACTIVE
            and room.question is not None
            and normalize_answer(content) == normalize_answer(room.question["answer"])
        )

        if is_correct and room.winner_user_id is None:
            # Arm first: the timer cannot fire before this method returns, and a
            # failure to arm (no running loop) must leave the round untouched
            self.schedule_next_round(room, self.next_round_delay_ms)
            room.winner_user_id = user_id
            room.state = FINISHED
            player["points"] += self.points_per_answer
            logger.info("Player '%s' won round (question %s) in room %s",
                        player["username"], room.question["id"], room.room_id)

            self.add_system_message(room, f"{player['username']} got it first!")
            self.add_system_message(room, f"Next round in {self.next_round_delay_ms / 1000:g} seconds...")

        msg = self._new_message(user_id, player["username"], content)
        if is_correct:
            msg["isCorrect"] = True
        room.messages.append(msg)
        return AnswerResult(is_correct, msg)

    def start_next_round(self, room: Room):
        room.state = ACTIVE
        room.winner_user_id = None
        room.next_round_at = None

        advance_question(room)
        self.add_system_message(room, "Next round started")
        self.add_system_message(room, f"Question: {room.question['text']}")
        logger.info("Room %s advanced to question %s", room.room_id, room.question["id"])

    def schedule_next_round(self, room: Room, delay_ms: int):
        room.next_round_timer.arm(delay_ms / 1000, lambda: self._fire_next_round(room))
        room.next_round_at = self.now_ms() + delay_ms

    async def _fire_next_round(self, room: Room):
        async with room.lock:
            # Guard against a stale timer firing into an already active round
            if room.state != FINISHED:
                logger.warning("Round timer fired for room %s in state %s", room.room_id, room.state)
                return
            mark = len(room.messages)
            self.start_next_round(room)
            new_messages = room.messages[mark:]
            if self.on_round_advanced:
                await self.on_round_advanced(room, new_messages)

    def close(self):
        """Cancel every pending round timer."""
        for room in self.rooms.values():
            room.next_round_timer.cancel()
