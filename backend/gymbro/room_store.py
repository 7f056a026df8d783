from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from .documents import (
    SERVER_TIMESTAMP,
    DocumentAlreadyExists,
    DocumentNotFound,
    DocumentStore,
    Transaction,
    split_path,
)
from .identity import CurrentUser, IdentityProvider
from .retry_policy import RetryPolicy
from .room_constants import (
    ARCHIVED_REASON_HOST_LEFT,
    DEFAULT_MAX_CAPACITY,
    DEFAULT_PRIVACY,
    INVITES_COLLECTION,
    MAX_CAPACITY,
    MIN_CAPACITY,
    MY_ACTIVE_ROOMS_LIMIT,
    OPEN_ROOM_STATUSES,
    ROOM_CODE_ATTEMPTS,
    ROOM_NAME_MAX_LENGTH,
    ROOM_PRIVACY_LEVELS,
    ROOMS_COLLECTION,
    TERMINAL_ROOM_STATUSES,
)
from .room_errors import (
    AlreadyExists,
    Conflict,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RoomError,
    Unauthenticated,
)
from .room_leaderboard import build_leaderboard
from .room_types import ActiveMetrics, Invite, Member, Room, ServiceResult
from .room_utils import (
    empty_metrics,
    invite_path,
    invites_collection,
    log_event,
    mask_uid,
    member_path,
    members_collection,
    metrics_collection,
    metrics_path,
    random_room_code,
    room_path,
    sanitize_room_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RoomStore:
    """Lifecycle and membership authority for workout rooms.

    Every public operation returns a ``ServiceResult``; failures are carried
    as ``error``/``code`` instead of being raised.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityProvider,
        retry: RetryPolicy | None = None,
        code_generator: Callable[[], str] = random_room_code,
        default_capacity: int = DEFAULT_MAX_CAPACITY,
    ) -> None:
        self._store = store
        self._identity = identity
        self._retry = retry or RetryPolicy()
        self._code_generator = code_generator
        self._default_capacity = default_capacity

    # ------------------------------------------------------------------
    # helpers

    def _require_user(self) -> CurrentUser:
        user = self._identity.current_user()
        if user is None or not user.uid:
            raise Unauthenticated("Utente non autenticato")
        return user

    @staticmethod
    def _require_room_id(room_id: Any) -> str:
        value = sanitize_room_id(room_id)
        if not value:
            raise InvalidArgument("ID room non valido")
        return value

    @staticmethod
    def _require_uid(uid: Any) -> str:
        if not isinstance(uid, str) or not uid.strip() or "/" in uid:
            raise InvalidArgument("ID utente richiesto")
        return uid.strip()

    @staticmethod
    def _validate_name(name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("Nome room richiesto")
        if len(name) > ROOM_NAME_MAX_LENGTH:
            raise InvalidArgument(f"Nome troppo lungo (max {ROOM_NAME_MAX_LENGTH} caratteri)")
        return name.strip()

    def _validate_capacity(self, max_capacity: Any) -> int:
        if max_capacity is None:
            return self._default_capacity
        if isinstance(max_capacity, bool) or not isinstance(max_capacity, int):
            raise InvalidArgument("Capacità non valida")
        if max_capacity < MIN_CAPACITY or max_capacity > MAX_CAPACITY:
            raise InvalidArgument(f"Capacità non valida ({MIN_CAPACITY}-{MAX_CAPACITY})")
        return max_capacity

    @staticmethod
    def _validate_privacy(privacy: Any) -> str:
        if privacy is None:
            return DEFAULT_PRIVACY
        if privacy not in ROOM_PRIVACY_LEVELS:
            raise InvalidArgument("Privacy non valida")
        return privacy

    @staticmethod
    def _member_document(user: CurrentUser, role: str, ready: bool) -> dict[str, Any]:
        return {
            "displayName": user.profile_name,
            "photoUrl": user.photo_url,
            "readyStatus": ready,
            "role": role,
            "joinedAt": SERVER_TIMESTAMP,
        }

    async def _execute(self, name: str, operation: Callable[[], Awaitable[T]]) -> ServiceResult:
        try:
            data = await self._retry.run(operation, name=name)
        except RoomError as exc:
            log_event(logger, "rejected", logging.INFO, operation=name, code=exc.code, error=exc.message)
            return ServiceResult.fail(exc.message, exc.code)
        except Exception as exc:
            logger.exception("Room operation %s failed", name)
            return ServiceResult.fail(str(exc) or "Servizio non disponibile", "unavailable")
        return ServiceResult.ok(data)

    # ------------------------------------------------------------------
    # room management

    async def create_room(
        self,
        name: str,
        workout_id: str | None = None,
        max_capacity: int | None = None,
        privacy: str | None = None,
    ) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            clean_name = self._validate_name(name)
            capacity = self._validate_capacity(max_capacity)
            clean_privacy = self._validate_privacy(privacy)

            for attempt in range(1, ROOM_CODE_ATTEMPTS + 1):
                room_id = self._code_generator()
                batch = self._store.batch()
                batch.create(
                    room_path(room_id),
                    {
                        "hostId": user.uid,
                        "name": clean_name,
                        "workoutId": workout_id or None,
                        "status": "lobby",
                        "maxCapacity": capacity,
                        "privacy": clean_privacy,
                        "createdAt": SERVER_TIMESTAMP,
                        "lastActivity": SERVER_TIMESTAMP,
                    },
                )
                batch.set(member_path(room_id, user.uid), self._member_document(user, "host", True))
                batch.set(metrics_path(room_id, user.uid), empty_metrics(SERVER_TIMESTAMP))
                try:
                    await batch.commit()
                except DocumentAlreadyExists:
                    log_event(logger, "code_collision", logging.WARNING, roomId=room_id, attempt=attempt)
                    continue
                log_event(logger, "created", roomId=room_id, host=mask_uid(user.uid), maxCapacity=capacity)
                return {"roomId": room_id, "status": "lobby"}

            raise Conflict("Impossibile generare un codice room univoco")

        return await self._execute("createRoom", operation)

    async def _join(self, user: CurrentUser, room_id: str) -> None:
        room_ref = room_path(room_id)
        member_ref = member_path(room_id, user.uid)

        async def body(tx: Transaction) -> None:
            room_snap = await tx.get(room_ref)
            if not room_snap.exists:
                raise NotFound("Room non trovata")
            if room_snap.get("status") in TERMINAL_ROOM_STATUSES:
                raise Conflict("Room terminata")
            member_snap = await tx.get(member_ref)
            if member_snap.exists:
                raise Conflict("Sei già nella room")
            members = await tx.list(members_collection(room_id))
            capacity = room_snap.get("maxCapacity") or self._default_capacity
            if len(members) >= int(capacity):
                raise Conflict("Room piena")

            tx.set(member_ref, self._member_document(user, "member", False))
            tx.set(metrics_path(room_id, user.uid), empty_metrics(SERVER_TIMESTAMP))
            tx.update(room_ref, {"lastActivity": SERVER_TIMESTAMP})

        await self._store.run_transaction(body)
        log_event(logger, "joined", roomId=room_id, uid=mask_uid(user.uid))

    async def join_room(self, room_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            await self._join(user, room_key)
            return {"roomId": room_key}

        return await self._execute("joinRoom", operation)

    async def leave_room(self, room_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            room_ref = room_path(room_key)
            member_ref = member_path(room_key, user.uid)

            async def body(tx: Transaction) -> dict[str, Any]:
                room_snap = await tx.get(room_ref)
                if not room_snap.exists:
                    raise NotFound("Room non trovata")
                member_snap = await tx.get(member_ref)
                if not member_snap.exists:
                    raise NotFound("Non sei nella room")

                is_host = room_snap.get("hostId") == user.uid
                archived = is_host
                tx.delete(member_ref)
                tx.delete(metrics_path(room_key, user.uid))
                if archived:
                    tx.update(
                        room_ref,
                        {
                            "status": "archived",
                            "archivedAt": SERVER_TIMESTAMP,
                            "archivedReason": ARCHIVED_REASON_HOST_LEFT,
                            "lastActivity": SERVER_TIMESTAMP,
                        },
                    )
                else:
                    tx.update(room_ref, {"lastActivity": SERVER_TIMESTAMP})
                return {"roomId": room_key, "wasHost": is_host, "archived": archived}

            result = await self._store.run_transaction(body)
            log_event(
                logger,
                "archived" if result["archived"] else "left",
                roomId=room_key,
                uid=mask_uid(user.uid),
                wasHost=result["wasHost"],
            )
            return result

        return await self._execute("leaveRoom", operation)

    async def set_ready_status(self, room_id: str, is_ready: bool) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            try:
                await self._store.update(member_path(room_key, user.uid), {"readyStatus": bool(is_ready)})
            except DocumentNotFound as exc:
                raise NotFound("Non sei nella room") from exc
            return {"readyStatus": bool(is_ready)}

        return await self._execute("setReadyStatus", operation)

    async def start_workout(self, room_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            room_ref = room_path(room_key)

            async def body(tx: Transaction) -> None:
                room_snap = await tx.get(room_ref)
                if not room_snap.exists:
                    raise NotFound("Room non trovata")
                if room_snap.get("hostId") != user.uid:
                    raise PermissionDenied("Solo l'host può avviare l'allenamento")
                if room_snap.get("status") != "lobby":
                    raise Conflict("L'allenamento è già in corso o terminato")
                tx.update(
                    room_ref,
                    {
                        "status": "active",
                        "startedAt": SERVER_TIMESTAMP,
                        "lastActivity": SERVER_TIMESTAMP,
                    },
                )

            await self._store.run_transaction(body)
            log_event(logger, "started", roomId=room_key)
            return {"status": "active"}

        return await self._execute("startWorkout", operation)

    async def end_workout(self, room_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            room_ref = room_path(room_key)

            async def body(tx: Transaction) -> list[dict[str, Any]]:
                room_snap = await tx.get(room_ref)
                if not room_snap.exists:
                    raise NotFound("Room non trovata")
                if room_snap.get("hostId") != user.uid:
                    raise PermissionDenied("Solo l'host può terminare l'allenamento")
                if room_snap.get("status") != "active":
                    raise Conflict("L'allenamento non è in corso")

                metrics = [
                    ActiveMetrics.from_document(doc.id, doc.to_dict())
                    for doc in await tx.list(metrics_collection(room_key))
                ]
                members = [
                    Member.from_document(doc.id, doc.to_dict())
                    for doc in await tx.list(members_collection(room_key))
                ]
                final_leaderboard = [entry.to_payload() for entry in build_leaderboard(metrics, members)]
                tx.update(
                    room_ref,
                    {
                        "status": "finished",
                        "finishedAt": SERVER_TIMESTAMP,
                        "lastActivity": SERVER_TIMESTAMP,
                        "finalLeaderboard": final_leaderboard,
                    },
                )
                return final_leaderboard

            final_leaderboard = await self._store.run_transaction(body)
            log_event(logger, "finished", roomId=room_key, participants=len(final_leaderboard))
            return {"status": "finished", "leaderboard": final_leaderboard}

        return await self._execute("endWorkout", operation)

    # ------------------------------------------------------------------
    # queries

    async def get_room(self, room_id: str) -> ServiceResult:
        async def operation() -> Room:
            room_key = self._require_room_id(room_id)
            snapshot = await self._store.get(room_path(room_key))
            if not snapshot.exists:
                raise NotFound("Room non trovata")
            return Room.from_document(room_key, snapshot.to_dict())

        return await self._execute("getRoom", operation)

    async def get_room_members(self, room_id: str) -> ServiceResult:
        async def operation() -> list[Member]:
            room_key = self._require_room_id(room_id)
            docs = await self._store.query(members_collection(room_key), order_by=("joinedAt", "asc"))
            return [Member.from_document(doc.id, doc.to_dict()) for doc in docs]

        return await self._execute("getRoomMembers", operation)

    async def get_leaderboard(self, room_id: str) -> ServiceResult:
        async def operation() -> list[Any]:
            room_key = self._require_room_id(room_id)
            metrics = [
                ActiveMetrics.from_document(doc.id, doc.to_dict())
                for doc in await self._store.list(metrics_collection(room_key))
            ]
            members = [
                Member.from_document(doc.id, doc.to_dict())
                for doc in await self._store.list(members_collection(room_key))
            ]
            return build_leaderboard(metrics, members)

        return await self._execute("getLeaderboard", operation)

    async def get_my_active_rooms(self) -> ServiceResult:
        async def operation() -> list[dict[str, Any]]:
            user = self._require_user()
            rooms = await self._store.query(
                ROOMS_COLLECTION,
                filters=[("status", "in", list(OPEN_ROOM_STATUSES))],
                order_by=("lastActivity", "desc"),
            )
            my_rooms: list[dict[str, Any]] = []
            for room_doc in rooms:
                member_snap = await self._store.get(member_path(room_doc.id, user.uid))
                if not member_snap.exists:
                    continue
                payload = Room.from_document(room_doc.id, room_doc.to_dict()).to_payload()
                payload["myRole"] = member_snap.get("role") or "member"
                my_rooms.append(payload)
                if len(my_rooms) >= MY_ACTIVE_ROOMS_LIMIT:
                    break
            return my_rooms

        return await self._execute("getMyActiveRooms", operation)

    # ------------------------------------------------------------------
    # invitations

    async def invite_member(self, room_id: str, invitee_uid: str) -> ServiceResult:
        # Duplicate checks are read-before-write; a concurrent double invite
        # leaves two pending records for the same user.
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            invitee = self._require_uid(invitee_uid)

            room_snap = await self._store.get(room_path(room_key))
            if not room_snap.exists:
                raise NotFound("Room non trovata")
            if room_snap.get("hostId") != user.uid:
                raise PermissionDenied("Solo l'host può invitare")
            if room_snap.get("status") in TERMINAL_ROOM_STATUSES:
                raise Conflict("Room terminata")

            existing = await self._store.query(
                invites_collection(room_key),
                filters=[("inviteeUid", "==", invitee)],
            )
            if existing:
                raise AlreadyExists("Utente già invitato")
            member_snap = await self._store.get(member_path(room_key, invitee))
            if member_snap.exists:
                raise AlreadyExists("Utente già nella room")

            invite_id = await self._store.add(
                invites_collection(room_key),
                {
                    "inviteeUid": invitee,
                    "invitedBy": user.uid,
                    "roomName": room_snap.get("name") or "",
                    "status": "pending",
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
            log_event(logger, "invited", roomId=room_key, invitee=mask_uid(invitee))
            return {"inviteId": invite_id, "roomId": room_key}

        return await self._execute("inviteMember", operation)

    async def get_my_invites(self) -> ServiceResult:
        async def operation() -> list[Invite]:
            user = self._require_user()
            docs = await self._store.collection_group(
                INVITES_COLLECTION,
                filters=[("inviteeUid", "==", user.uid), ("status", "==", "pending")],
            )
            invites: list[Invite] = []
            room_status: dict[str, Any] = {}
            for doc in docs:
                parts = split_path(doc.path)
                if len(parts) != 4 or parts[0] != ROOMS_COLLECTION:
                    continue
                room_key = parts[1]
                if room_key not in room_status:
                    room_status[room_key] = (await self._store.get(room_path(room_key))).get("status")
                if room_status[room_key] not in OPEN_ROOM_STATUSES:
                    continue
                invites.append(Invite.from_document(doc.id, room_key, doc.to_dict()))
            invites.sort(key=lambda invite: (invite.created_at or 0, invite.invite_id))
            return invites

        return await self._execute("getMyInvites", operation)

    async def _load_own_invite(self, user: CurrentUser, room_id: str, invite_id: str) -> str:
        if not isinstance(invite_id, str) or not invite_id.strip() or "/" in invite_id:
            raise InvalidArgument("ID invito non valido")
        invite_key = invite_id.strip()
        ref = invite_path(room_id, invite_key)
        snapshot = await self._store.get(ref)
        if not snapshot.exists:
            raise NotFound("Invito non trovato")
        if snapshot.get("inviteeUid") != user.uid:
            raise PermissionDenied("Questo invito non è per te")
        return ref

    async def accept_invite(self, room_id: str, invite_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            ref = await self._load_own_invite(user, room_key, invite_id)
            await self._join(user, room_key)
            await self._store.delete(ref)
            return {"roomId": room_key}

        return await self._execute("acceptInvite", operation)

    async def decline_invite(self, room_id: str, invite_id: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            ref = await self._load_own_invite(user, room_key, invite_id)
            await self._store.delete(ref)
            return {"roomId": room_key}

        return await self._execute("declineInvite", operation)

    # ------------------------------------------------------------------
    # host actions

    async def kick_member(self, room_id: str, member_uid: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            target = self._require_uid(member_uid)
            room_ref = room_path(room_key)
            target_ref = member_path(room_key, target)

            async def body(tx: Transaction) -> None:
                room_snap = await tx.get(room_ref)
                if not room_snap.exists:
                    raise NotFound("Room non trovata")
                if room_snap.get("hostId") != user.uid:
                    raise PermissionDenied("Solo l'host può rimuovere membri")
                if target == user.uid:
                    raise InvalidArgument("Usa leaveRoom per uscire")
                target_snap = await tx.get(target_ref)
                if not target_snap.exists:
                    raise NotFound("Membro non trovato")
                tx.delete(target_ref)
                tx.delete(metrics_path(room_key, target))
                tx.update(room_ref, {"lastActivity": SERVER_TIMESTAMP})

            await self._store.run_transaction(body)
            log_event(logger, "kicked", roomId=room_key, uid=mask_uid(target))
            return {"roomId": room_key, "uid": target}

        return await self._execute("kickMember", operation)

    async def transfer_host(self, room_id: str, new_host_uid: str) -> ServiceResult:
        async def operation() -> dict[str, Any]:
            user = self._require_user()
            room_key = self._require_room_id(room_id)
            target = self._require_uid(new_host_uid)
            if target == user.uid:
                raise InvalidArgument("Sei già l'host")
            room_ref = room_path(room_key)
            old_host_ref = member_path(room_key, user.uid)
            new_host_ref = member_path(room_key, target)

            async def body(tx: Transaction) -> None:
                room_snap = await tx.get(room_ref)
                if not room_snap.exists:
                    raise NotFound("Room non trovata")
                if room_snap.get("hostId") != user.uid:
                    raise PermissionDenied("Solo l'host può trasferire il ruolo")
                if room_snap.get("status") in TERMINAL_ROOM_STATUSES:
                    raise Conflict("Room terminata")
                new_host_snap = await tx.get(new_host_ref)
                if not new_host_snap.exists:
                    raise NotFound("Il nuovo host deve essere un membro della room")

                tx.update(room_ref, {"hostId": target, "lastActivity": SERVER_TIMESTAMP})
                tx.update(old_host_ref, {"role": "member"})
                tx.update(new_host_ref, {"role": "host"})

            await self._store.run_transaction(body)
            log_event(
                logger,
                "host_transferred",
                roomId=room_key,
                previous=mask_uid(user.uid),
                current=mask_uid(target),
            )
            return {"roomId": room_key, "hostId": target}

        return await self._execute("transferHost", operation)
