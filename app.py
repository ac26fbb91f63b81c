# app.py: Ember practice API
# - Session question selection and recommendation-driven sessions
# - Attempt submission and session completion with local-answer reconciliation
# - Weakness heatmap, weekly study plan and adaptive next-question endpoints

import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from api_errors import AppError, BadRequestError, NotFoundError, register_error_handlers
from db import PracticeStore
from engines.difficulty import current_streak, tracker_from_history
from engines.question_selector import AdaptiveCriteria, QuestionCriteria, QuestionSelector
from engines.study_plan import FOCUS_MODES, PlanOptions, StudyPlanGenerator
from env_validation import Settings, load_settings, validate_environment
from event_log import configure_logging
from practice_service import (
    PracticeService,
    SessionClosedError,
    UnknownChildError,
    UnknownSessionError,
    UnknownTemplateError,
)
from question_bank import QuestionBank
from schemas import (
    AttemptRequest,
    CompleteSessionRequest,
    CreateSessionRequest,
    FlagQuestionRequest,
    MockSessionRequest,
    normalise_recommendation_request,
)

logger = logging.getLogger(__name__)

_SESSION_TYPES = ("quick", "focus", "mock", "quick_byte")
_MAX_SESSION_QUESTIONS = 100


@dataclass
class Services:
    settings: Settings
    store: PracticeStore
    selector: QuestionSelector
    planner: StudyPlanGenerator
    practice: PracticeService


def configure_services(
    target: FastAPI,
    store: PracticeStore,
    settings: Settings,
    rng: Optional[random.Random] = None,
) -> Services:
    """Wire the engines around one store and attach them to ``target.state``."""
    selector = QuestionSelector.from_settings(store, settings, rng=rng)
    services = Services(
        settings=settings,
        store=store,
        selector=selector,
        planner=StudyPlanGenerator(store),
        practice=PracticeService.from_settings(store, settings, selector=selector),
    )
    target.state.services = services
    return services


def _bootstrap(target: FastAPI) -> Services:
    validate_environment()
    settings = load_settings()
    store = PracticeStore.from_settings(settings)
    store.init()
    if settings.question_bank_path:
        bank = QuestionBank(settings.question_bank_path, store=store)
        logger.info("Imported %d questions from %s", len(bank.questions), settings.question_bank_path)
    return configure_services(target, store, settings)


@asynccontextmanager
async def _lifespan(target: FastAPI):
    try:
        configure_logging(load_settings().log_level)
        services = _bootstrap(target)
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        services.store.close()


app = FastAPI(title="Ember practice API", version="0.1.0", lifespan=_lifespan)
register_error_handlers(app)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        # lifespan did not run (e.g. direct ASGI calls); build from the environment
        services = _bootstrap(request.app)
    return services


def _parse_positive_int(raw: Optional[str], name: str, maximum: int) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise BadRequestError(f"Invalid {name}. Must be a positive integer")
    if value < 1 or value > maximum:
        raise BadRequestError(f"Invalid {name}. Must be between 1 and {maximum}")
    return value


def _require_child(services: Services, child_id: str) -> None:
    if services.store.get_child(child_id) is None:
        raise NotFoundError("Child not found", internal_code="CHILD_NOT_FOUND")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# practice sessions
# ---------------------------------------------------------------------------
@app.get("/api/practice/session-questions")
def session_questions(
    childId: Optional[str] = None,
    sessionType: Optional[str] = None,
    subject: Optional[str] = None,
    count: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if not childId or not sessionType:
        raise BadRequestError("Missing required parameters: childId and sessionType")
    if sessionType not in _SESSION_TYPES:
        raise BadRequestError("Invalid sessionType. Must be quick, focus, mock, or quick_byte")

    requested = _parse_positive_int(count, "count", _MAX_SESSION_QUESTIONS)
    subject_filter = subject.strip().lower() if subject and subject.strip().lower() != "mixed" else None
    criteria = QuestionCriteria(
        child_id=childId,
        session_type=sessionType,
        count=requested,
        subject=subject_filter,
    )
    questions = services.selector.select_questions(criteria)
    if not questions:
        return JSONResponse(
            status_code=200,
            content={"error": "No questions available for this criteria", "questions": []},
        )
    return {
        "questions": [question.to_public() for question in questions],
        "count": len(questions),
        "criteria": {
            "sessionType": sessionType,
            "subject": subject_filter or "mixed",
            "requestedCount": criteria.resolved_count,
        },
    }


@app.post("/api/practice/session/from-recommendation")
def session_from_recommendation(
    body: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    try:
        request = normalise_recommendation_request(body)
    except ValueError as exc:
        raise BadRequestError(str(exc))

    try:
        created = services.practice.create_session_from_recommendation(request)
    except UnknownChildError:
        raise BadRequestError("Child not found", internal_code="CHILD_NOT_FOUND")

    if created is None:
        raise NotFoundError(
            "No questions available for this recommendation",
            internal_code="NO_QUESTIONS",
            metadata={"subject": request.subject, "topics": request.topics},
        )
    session_id = created.session.id
    return {
        "success": True,
        "sessionId": session_id,
        "questionCount": len(created.questions),
        "redirect": f"/practice/session/{session_id}",
        "questionIds": [question.id for question in created.questions],
    }


@app.post("/api/practice/sessions")
def create_practice_session(payload: CreateSessionRequest, services: Services = Depends(get_services)):
    subject = payload.subject.strip().lower() if payload.subject else None
    criteria = QuestionCriteria(
        child_id=payload.childId,
        session_type=payload.sessionType,
        count=payload.count,
        subject=None if subject in (None, "", "mixed", "all") else subject,
        topics=tuple(payload.topics) if payload.topics else None,
        difficulty=payload.difficulty,
    )
    try:
        created = services.practice.create_session(criteria)
    except UnknownChildError:
        raise NotFoundError("Child not found", internal_code="CHILD_NOT_FOUND")
    if created is None:
        raise NotFoundError("No questions available for this criteria", internal_code="NO_QUESTIONS")
    return created.to_dict()


@app.get("/api/practice/mock/templates")
def mock_templates(childId: Optional[str] = None, services: Services = Depends(get_services)):
    year_group = None
    if childId:
        child = services.store.get_child(childId)
        if child is None:
            raise NotFoundError("Child not found", internal_code="CHILD_NOT_FOUND")
        year_group = child.get("year_group")
    templates = services.practice.templates.templates(year_group)
    return {"templates": [template.to_dict() for template in templates]}


@app.post("/api/practice/mock/sessions")
def create_mock_session(payload: MockSessionRequest, services: Services = Depends(get_services)):
    try:
        created = services.practice.create_mock_session(payload.childId, payload.templateId)
    except UnknownTemplateError:
        raise NotFoundError("Mock test template not found", internal_code="TEMPLATE_NOT_FOUND")
    except UnknownChildError:
        raise NotFoundError("Child not found", internal_code="CHILD_NOT_FOUND")
    if created is None:
        raise NotFoundError("No questions available for this mock test", internal_code="NO_QUESTIONS")
    template = services.practice.templates.get(payload.templateId)
    return {**created.to_dict(), "templateName": template.name}


@app.post("/api/practice/sessions/{session_id}/flag")
def flag_question(
    session_id: str,
    payload: FlagQuestionRequest,
    services: Services = Depends(get_services),
):
    try:
        flagged = services.practice.toggle_flag(session_id, payload.childId, payload.questionId)
    except UnknownSessionError:
        raise NotFoundError("Session not found", internal_code="SESSION_NOT_FOUND")
    except SessionClosedError:
        raise BadRequestError("Session is already complete", internal_code="SESSION_COMPLETE")
    if flagged is None:
        raise BadRequestError("Question is not part of this session", internal_code="QUESTION_NOT_IN_SESSION")
    return {"flagged": flagged}


@app.post("/api/practice/sessions/{session_id}/attempts")
def submit_practice_attempt(
    session_id: str,
    payload: AttemptRequest,
    services: Services = Depends(get_services),
):
    ok = services.practice.submit_attempt(
        session_id,
        payload.childId,
        payload.questionId,
        payload.selectedAnswer,
        payload.timeTakenSeconds,
    )
    return {"success": ok}


@app.post("/api/practice/sessions/{session_id}/complete")
def complete_practice_session(
    session_id: str,
    payload: CompleteSessionRequest,
    services: Services = Depends(get_services),
):
    try:
        summary = services.practice.complete_session(
            session_id,
            payload.answers,
            payload.timings,
            payload.timeElapsedSeconds,
            flagged=payload.flaggedQuestions,
        )
    except UnknownSessionError:
        raise NotFoundError("Session not found", internal_code="SESSION_NOT_FOUND")
    if summary is None:
        raise AppError("Failed to complete practice session", "SESSION_COMPLETE_FAILED", 500)
    return summary.to_dict()


# ---------------------------------------------------------------------------
# analytics
# ---------------------------------------------------------------------------
@app.get("/api/analytics/heatmap")
def weakness_heatmap(childId: Optional[str] = None, services: Services = Depends(get_services)):
    if not childId:
        raise BadRequestError("Missing required parameter: childId")
    _require_child(services, childId)
    heatmap = services.store.weakness_heatmap(childId)
    return heatmap.model_dump(mode="json")


def _parse_active_days(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise BadRequestError("Invalid activeDays. Use comma-separated day numbers 0-6")


@app.get("/api/analytics/study-plan")
def study_plan(
    childId: Optional[str] = None,
    dailyMinutes: Optional[str] = None,
    maxActivitiesPerDay: Optional[str] = None,
    focusMode: Optional[str] = None,
    activeDays: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if not childId:
        raise BadRequestError("Missing required parameter: childId")
    if focusMode and focusMode not in FOCUS_MODES:
        raise BadRequestError(f"Invalid focusMode. Must be one of {', '.join(FOCUS_MODES)}")

    overrides: Dict[str, Any] = {}
    minutes = _parse_positive_int(dailyMinutes, "dailyMinutes", 240)
    if minutes is not None:
        overrides["daily_minutes"] = minutes
    max_activities = _parse_positive_int(maxActivitiesPerDay, "maxActivitiesPerDay", 10)
    if max_activities is not None:
        overrides["max_activities_per_day"] = max_activities
    if focusMode:
        overrides["focus_mode"] = focusMode
    days = _parse_active_days(activeDays)
    if days is not None:
        overrides["active_days"] = tuple(days)
    try:
        options = PlanOptions(**overrides)
    except ValueError as exc:
        raise BadRequestError(str(exc))

    _require_child(services, childId)
    plan = services.planner.generate_weekly_plan(childId, options)
    if plan is None:
        raise NotFoundError("Could not generate study plan", internal_code="PLAN_UNAVAILABLE")
    return plan.to_dict()


@app.get("/api/analytics/quick-recommendations")
def quick_recommendations(
    childId: Optional[str] = None,
    minutes: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if not childId:
        raise BadRequestError("Missing required parameter: childId")
    budget = _parse_positive_int(minutes, "minutes", 120) or 15
    _require_child(services, childId)
    activities = services.planner.get_quick_recommendations(childId, budget)
    return {"activities": [activity.to_dict() for activity in activities]}


# ---------------------------------------------------------------------------
# adaptive delivery
# ---------------------------------------------------------------------------
@app.get("/api/adaptive/next-question")
def adaptive_next_question(
    childId: Optional[str] = None,
    topicId: Optional[str] = None,
    sessionId: Optional[str] = None,
    difficulty: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if not childId or not topicId:
        raise BadRequestError("Missing required parameters: childId and topicId")
    if difficulty and difficulty not in ("foundation", "standard", "challenge"):
        raise BadRequestError("Invalid difficulty. Must be foundation, standard, or challenge")

    history = services.store.topic_outcomes(childId, topicId)
    outcomes = [correct for correct, _ in history]
    tracker = tracker_from_history(childId, topicId, outcomes)
    current = difficulty or tracker.current_difficulty

    exclude: List[str] = []
    if sessionId:
        exclude = [attempt.question_id for attempt in services.store.list_session_attempts(sessionId)]

    question = services.selector.select_next_question(
        AdaptiveCriteria(child_id=childId, topic=topicId, current_difficulty=current, exclude_ids=exclude)
    )
    if question is None:
        raise NotFoundError(
            "No suitable questions available",
            internal_code="QUESTIONS_EXHAUSTED",
            extra={"exhausted": True},
        )
    return {
        "question": question.to_public(),
        "adaptiveInfo": {
            "currentDifficulty": current,
            "recentAccuracy": round(tracker.window().accuracy, 3),
            "totalAttempts": len(outcomes),
            "currentStreak": current_streak(outcomes),
        },
    }
