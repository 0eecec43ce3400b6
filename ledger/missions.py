import logging
from uuid import uuid4

from .exceptions import InvalidState, MissionNotFound, ValidationFailed
from .models import (
    CreateMissionRequest,
    Mission,
    MissionAction,
    MissionProgress,
    MissionProgressRequest,
    MissionStatus,
    MissionView,
    TransactionSource,
)
from .service import LedgerService, user_scope
from .storage import UnitOfWork

logger = logging.getLogger(__name__)


def progress_key(user_id: str, mission_id: str) -> str:
    return f"{user_id}_{mission_id}"


class MissionService:
    """
    Per-user mission progress:

        available -> in_progress -> reviewing (proof missions) -> completed

    The payout is credited once, on the transition to completed.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def create_mission(self, request: CreateMissionRequest) -> Mission:
        mission = Mission(
            id=request.id or str(uuid4()),
            title=request.title,
            payout=request.payout,
            steps=request.steps,
            requires_proof=request.requires_proof,
            created_at=self.ledger.clock(),
        )
        with self.storage.unit_of_work(f"mission:{mission.id}") as uow:
            uow.put("missions", mission.id, mission.model_dump(mode="json"))
        return mission

    def get_mission(self, mission_id: str) -> Mission:
        data = self.storage.get("missions", mission_id)
        if data is None:
            raise MissionNotFound(f"Mission {mission_id} not found")
        return Mission(**data)

    def list_for_user(self, user_id: str) -> list[MissionView]:
        self.ledger.get_user(user_id)
        views = []
        for data in self.storage.query("missions", is_active=True):
            mission = Mission(**data)
            progress = self.storage.get("mission_progress", progress_key(user_id, mission.id))
            views.append(MissionView(
                mission=mission,
                progress=MissionProgress(**progress) if progress else MissionProgress(user_id=user_id, mission_id=mission.id),
            ))
        return views

    def _load_progress(self, uow: UnitOfWork, user_id: str, mission_id: str) -> MissionProgress:
        data = uow.get("mission_progress", progress_key(user_id, mission_id))
        if data is None:
            return MissionProgress(user_id=user_id, mission_id=mission_id)
        return MissionProgress(**data)

    def update_progress(self, mission_id: str, request: MissionProgressRequest) -> MissionView:
        mission = self.get_mission(mission_id)
        if not mission.is_active:
            raise InvalidState(f"Mission {mission_id} is not active")

        now = self.ledger.clock()
        awarded = 0
        with self.storage.unit_of_work(user_scope(request.user_id)) as uow:
            user = self.ledger.load_user(uow, request.user_id)
            progress = self._load_progress(uow, user.id, mission.id)
            if progress.status == MissionStatus.COMPLETED:
                raise InvalidState(f"Mission {mission_id} already completed")

            if request.action == MissionAction.START:
                self._start(progress, now)

            elif request.action == MissionAction.COMPLETE_STEP:
                if request.step_id not in mission.steps:
                    raise ValidationFailed(f"Unknown step {request.step_id!r}")
                if progress.status == MissionStatus.REVIEWING:
                    raise InvalidState("Mission is under review")
                self._start(progress, now)
                if request.step_id not in progress.completed_steps:
                    progress.completed_steps.append(request.step_id)

            elif request.action == MissionAction.SUBMIT_PROOF:
                if not request.proof_url:
                    raise ValidationFailed("proof_url is required")
                if not mission.requires_proof:
                    raise ValidationFailed("This mission does not take proofs")
                self._start(progress, now)
                progress.proof_urls.append(request.proof_url)
                progress.status = MissionStatus.REVIEWING

            elif request.action == MissionAction.REJECT_PROOF:
                if progress.status != MissionStatus.REVIEWING:
                    raise InvalidState("No proof under review")
                progress.status = MissionStatus.IN_PROGRESS

            elif request.action == MissionAction.COMPLETE:
                self._check_completable(mission, progress)
                claim, txn = self.ledger.credit_once_in(
                    uow, user, f"mission:{mission.id}", TransactionSource.MISSION, mission.payout,
                    description=f"Mission completed: {mission.title}",
                    metadata={"mission_id": mission.id, "mission_title": mission.title},
                )
                progress.status = MissionStatus.COMPLETED
                progress.completed_at = now
                if txn is not None:
                    awarded = progress.points_earned = txn.amount

            progress.updated_at = now
            uow.put("mission_progress", progress_key(user.id, mission.id), progress.model_dump(mode="json"))

        if awarded:
            logger.info("Mission %s completed by %s, %d points", mission.id, user.id, awarded)
        return MissionView(mission=mission, progress=progress, points_awarded=awarded, new_balance=user.total_points)

    @staticmethod
    def _start(progress: MissionProgress, now) -> None:
        if progress.status == MissionStatus.AVAILABLE:
            progress.status = MissionStatus.IN_PROGRESS
            progress.started_at = now

    @staticmethod
    def _check_completable(mission: Mission, progress: MissionProgress) -> None:
        if mission.requires_proof:
            if progress.status != MissionStatus.REVIEWING:
                raise InvalidState("Proof must be submitted and reviewed before completion")
            return
        missing = [s for s in mission.steps if s not in progress.completed_steps]
        if missing:
            raise InvalidState(f"Steps not completed: {', '.join(missing)}")
