from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .contacts import ContactManager
from .models import (
    AutomationAction,
    AutomationFlow,
    AutomationResult,
    AutomationTrigger,
    FlowStats,
    PendingReply,
    UserContext,
    to_iso,
    utcnow,
)
from .store import StateStore

log = logging.getLogger(__name__)

FLOWS_NS = "flows"
# Run counters are kept in store counters, apart from the flow document.
FLOW_STATS_NS = "flow_stats"
CONTEXTS_NS = "contexts"

WELCOME_MESSAGE = (
    "👋 Welcome to ClientPing! I'm your AI assistant for business automation. "
    "How can I help you today?"
)
FEATURES_MESSAGE = (
    "🚀 ClientPing Features:\n\n"
    "• AI-powered messaging automation\n"
    "• Smart conversation flows\n"
    "• Business analytics & insights\n"
    "• Multi-platform integration\n"
    "• Custom brand voice\n\n"
    "What would you like to know more about?"
)
HELP_AI_PROMPT = (
    "User is asking for help. Provide a helpful overview of ClientPing features "
    "and how you can assist them."
)


class AutomationError(Exception):
    """Raised for invalid flows/segments and failed actions."""


def default_flows() -> List[AutomationFlow]:
    welcome = AutomationFlow.from_dict({
        "id": "welcome",
        "name": "Welcome Flow",
        "description": "Greets new users and introduces ClientPing",
        "triggers": [{"id": "welcome-trigger", "type": "welcome", "priority": 10}],
        "actions": [
            {"id": "welcome-message", "type": "send_message", "config": {"message": WELCOME_MESSAGE, "delay": 1000}},
            {"id": "tag-new-user", "type": "add_tag", "config": {"tags": ["new_user"]}},
        ],
    })
    help_flow = AutomationFlow.from_dict({
        "id": "help",
        "name": "Help Flow",
        "description": "Provides help when users ask for assistance",
        "triggers": [{
            "id": "help-keywords",
            "type": "keyword",
            "priority": 8,
            "conditions": {"keywords": ["help", "support", "assist", "how", "what can you do"]},
        }],
        "actions": [
            {"id": "help-ai-response", "type": "ai_response", "config": {"use_ai": True, "ai_prompt": HELP_AI_PROMPT}},
        ],
    })
    features = AutomationFlow.from_dict({
        "id": "features",
        "name": "Features Flow",
        "description": "Explains ClientPing features",
        "triggers": [{
            "id": "features-keywords",
            "type": "keyword",
            "priority": 7,
            "conditions": {"keywords": ["features", "capabilities", "what do you do", "services"]},
        }],
        "actions": [
            {"id": "features-message", "type": "send_message", "config": {"message": FEATURES_MESSAGE}},
        ],
    })
    return [welcome, help_flow, features]


def render_template(s: str, ctx: dict) -> str:
    """Template helper supporting dotted paths: {{ name }}, {{ tags[0] }}."""
    def _resolve(path: str):
        cur: Any = ctx
        for part in str(path or "").strip().split("."):
            part = part.strip()
            if not part:
                continue
            m = re.fullmatch(r"([A-Za-z0-9_]+)\[(\d+)\]", part)
            key, idx = (m.group(1), int(m.group(2))) if m else (part, None)
            if not isinstance(cur, dict):
                return ""
            cur = cur.get(key)
            if idx is not None:
                if isinstance(cur, list) and 0 <= idx < len(cur):
                    cur = cur[idx]
                else:
                    return ""
        return "" if cur is None else str(cur)

    if not s:
        return ""
    return re.sub(r"\{\{\s*([^}]+?)\s*\}\}", lambda m: _resolve(m.group(1)), str(s))


def _keyword_hit(trigger: AutomationTrigger, text_lower: str) -> bool:
    return any(k.lower() in text_lower for k in trigger.conditions.keywords if k)


class _Run:
    """Actions taken and replies queued by one flow execution (kept on failure)."""

    def __init__(self) -> None:
        self.actions_taken: List[str] = []
        self.replies: List[PendingReply] = []
        self.user_updated = False


class AutomationEngine:
    def __init__(
        self,
        store: StateStore,
        contacts: Optional[ContactManager] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        history_limit: int = 10,
        max_depth: int = 5,
    ):
        self.store = store
        self.contacts = contacts
        self._sleep = sleep
        self.history_limit = max(1, int(history_limit))
        self.max_depth = max(1, int(max_depth))

    async def initialize(self) -> None:
        if await self.store.count(FLOWS_NS) > 0:
            return
        for flow in default_flows():
            await self.store.put(FLOWS_NS, flow.id, flow.to_dict())
        log.info("Seeded default automation flows")

    # ── inbound ──
    async def process_message(
        self,
        chat_id: str,
        text: str,
        user_id: str,
        user_name: Optional[str] = None,
    ) -> AutomationResult:
        chat_id = str(chat_id)
        text = text or ""
        try:
            raw = await self.store.get(CONTEXTS_NS, chat_id)
            if raw is None:
                context = UserContext(chat_id=chat_id, user_id=str(user_id), name=user_name)
                self._record_message(context, text)
                await self._save_context(context)
                log.info("New user context created")
                flow = await self._find_welcome_flow()
                if flow is None:
                    return AutomationResult(triggered=False, user_updated=True)
                result = await self._run_flow(flow, context, text)
                result.user_updated = True
                return result

            context = UserContext.from_dict(raw)
            if user_name and not context.name:
                context.name = user_name
            self._record_message(context, text)
            await self._save_context(context)

            flow = await self._find_keyword_flow(text)
            if flow is None:
                return AutomationResult(triggered=False, user_updated=True)
            return await self._run_flow(flow, context, text)
        except Exception as exc:
            log.exception("Automation processing failed")
            return AutomationResult(triggered=False, error=str(exc))

    def _record_message(self, context: UserContext, text: str) -> None:
        context.last_message = text
        context.last_active = utcnow()
        context.message_history.append(text)
        if len(context.message_history) > self.history_limit:
            context.message_history = context.message_history[-self.history_limit:]

    async def _save_context(self, context: UserContext) -> None:
        await self.store.put(CONTEXTS_NS, context.chat_id, context.to_dict())

    async def _find_welcome_flow(self) -> Optional[AutomationFlow]:
        ranked: List[Tuple[int, AutomationFlow]] = []
        for flow in await self.get_all_flows():
            if not flow.active:
                continue
            prios = [t.priority for t in flow.triggers if t.active and t.type == "welcome"]
            if prios:
                ranked.append((max(prios), flow))
        return self._pick_top(ranked)

    async def _find_keyword_flow(self, text: str) -> Optional[AutomationFlow]:
        text_lower = text.lower()
        ranked: List[Tuple[int, AutomationFlow]] = []
        for flow in await self.get_all_flows():
            if not flow.active:
                continue
            prios = [
                t.priority
                for t in flow.triggers
                if t.active and t.type == "keyword" and _keyword_hit(t, text_lower)
            ]
            if prios:
                ranked.append((max(prios), flow))
        return self._pick_top(ranked)

    @staticmethod
    def _pick_top(ranked: List[Tuple[int, AutomationFlow]]) -> Optional[AutomationFlow]:
        if not ranked:
            return None
        ranked.sort(key=lambda pf: (-pf[0], pf[1].created_at, pf[1].id))
        return ranked[0][1]

    async def _run_flow(self, flow: AutomationFlow, context: UserContext, text: str) -> AutomationResult:
        await self._bump_stats(flow.id, triggered=True)
        log.info("Executing flow %s", flow.id)
        run = _Run()
        try:
            await self._execute_actions(flow, context, text, run, depth=0)
        except Exception as exc:
            log.warning("Flow %s failed after %d action(s): %s", flow.id, len(run.actions_taken), exc)
            await self._save_context(context)
            return AutomationResult(
                triggered=True,
                flow_id=flow.id,
                actions_taken=run.actions_taken,
                error=str(exc),
                replies=run.replies,
                user_updated=run.user_updated,
            )
        await self._save_context(context)
        await self._bump_stats(flow.id, completed=True)
        return AutomationResult(
            triggered=True,
            flow_id=flow.id,
            actions_taken=run.actions_taken,
            replies=run.replies,
            user_updated=run.user_updated,
        )

    async def _bump_stats(self, flow_id: str, *, triggered: bool = False, completed: bool = False) -> None:
        if triggered:
            await self.store.incr(FLOW_STATS_NS, flow_id, "triggered", stamp=to_iso(utcnow()))
        if completed:
            await self.store.incr(FLOW_STATS_NS, flow_id, "completed")

    async def _reset_stats(self, flow: AutomationFlow) -> None:
        await self.store.clear_counters(FLOW_STATS_NS, flow.id)
        stats = flow.stats
        if stats.triggered or stats.completed:
            await self.store.incr(FLOW_STATS_NS, flow.id, "triggered", stats.triggered, stamp=to_iso(stats.last_triggered))
            await self.store.incr(FLOW_STATS_NS, flow.id, "completed", stats.completed)

    async def _attach_stats(self, flows: List[AutomationFlow]) -> List[AutomationFlow]:
        counters = await self.store.counters(FLOW_STATS_NS, [f.id for f in flows])
        for flow in flows:
            c = counters.get(flow.id)
            if c is not None:
                flow.stats = FlowStats.from_dict({
                    "triggered": c.get("triggered"),
                    "completed": c.get("completed"),
                    "last_triggered": c.get("stamp"),
                })
        return flows

    async def _execute_actions(
        self,
        flow: AutomationFlow,
        context: UserContext,
        text: str,
        run: _Run,
        depth: int,
    ) -> None:
        if depth >= self.max_depth:
            raise AutomationError(f"Maximum flow depth ({self.max_depth}) exceeded at flow {flow.id}")
        for action in flow.actions:
            if not await self._execute_action(action, context, text, run, depth):
                continue
            run.actions_taken.append(f"{action.type}:{action.id}")
            if action.config.delay:
                await self._sleep(action.config.delay / 1000.0)

    async def _execute_action(
        self,
        action: AutomationAction,
        context: UserContext,
        text: str,
        run: _Run,
        depth: int,
    ) -> bool:
        """Run one action; False when it was skipped."""
        cfg = action.config
        if action.type == "send_message":
            if cfg.use_ai:
                run.replies.append(PendingReply(kind="ai", prompt=cfg.ai_prompt or cfg.message, action_id=action.id))
                return True
            ctx = context.to_dict()
            ctx["text"] = text
            body = render_template(cfg.message or "", ctx).strip()
            if body:
                run.replies.append(PendingReply(kind="text", text=body, action_id=action.id))
        elif action.type == "ai_response":
            run.replies.append(PendingReply(kind="ai", prompt=cfg.ai_prompt or cfg.message, action_id=action.id))
        elif action.type == "add_tag":
            for tag in cfg.tags:
                if tag not in context.tags:
                    context.tags.append(tag)
                if self.contacts:
                    await self.contacts.add_contact_tag(context.chat_id, tag)
            run.user_updated = True
        elif action.type == "update_segment":
            if cfg.segment:
                context.segment = cfg.segment
                run.user_updated = True
                if self.contacts:
                    await self.contacts.update_contact(context.chat_id, {"segment": cfg.segment})
        elif action.type == "trigger_flow":
            target = await self.get_flow(cfg.flow_id) if cfg.flow_id else None
            if target is None:
                log.warning("trigger_flow %s: target flow %s not found", action.id, cfg.flow_id)
                return False
            await self._execute_actions(target, context, text, run, depth + 1)
        else:
            log.warning("Skipping unknown action type %s (%s)", action.type, action.id)
            return False
        return True

    # ── flows ──
    async def add_flow(self, flow: Union[AutomationFlow, Dict[str, Any]]) -> AutomationFlow:
        if isinstance(flow, dict):
            data = dict(flow)
            data.setdefault("id", f"flow_{uuid.uuid4().hex[:12]}")
            if not data.get("name"):
                raise AutomationError("Flow name is required")
            try:
                flow = AutomationFlow.from_dict(data)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise AutomationError(f"Invalid flow: {exc}") from exc
        await self.store.put(FLOWS_NS, flow.id, flow.to_dict())
        await self._reset_stats(flow)
        return flow

    async def get_flow(self, flow_id: str) -> Optional[AutomationFlow]:
        raw = await self.store.get(FLOWS_NS, str(flow_id))
        if not raw:
            return None
        flows = await self._attach_stats([AutomationFlow.from_dict(raw)])
        return flows[0]

    async def get_all_flows(self) -> List[AutomationFlow]:
        flows = [AutomationFlow.from_dict(f) for f in await self.store.values(FLOWS_NS)]
        return await self._attach_stats(flows)

    async def update_flow(self, flow_id: str, updates: Dict[str, Any]) -> bool:
        flow = await self.get_flow(flow_id)
        if not flow:
            return False
        try:
            if updates.get("name") is not None:
                flow.name = str(updates["name"])
            if updates.get("description") is not None:
                flow.description = str(updates["description"])
            if updates.get("triggers") is not None:
                flow.triggers = [
                    t if isinstance(t, AutomationTrigger) else AutomationTrigger.from_dict(t)
                    for t in updates["triggers"]
                ]
            if updates.get("actions") is not None:
                flow.actions = [
                    a if isinstance(a, AutomationAction) else AutomationAction.from_dict(a)
                    for a in updates["actions"]
                ]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise AutomationError(f"Invalid flow update: {exc}") from exc
        if updates.get("active") is not None:
            flow.active = bool(updates["active"])
        flow.updated_at = utcnow()
        await self.store.put(FLOWS_NS, flow.id, flow.to_dict())
        return True

    async def delete_flow(self, flow_id: str) -> bool:
        await self.store.clear_counters(FLOW_STATS_NS, str(flow_id))
        return await self.store.delete(FLOWS_NS, str(flow_id))

    # ── analytics ──
    async def get_user_context(self, chat_id: str) -> Optional[UserContext]:
        raw = await self.store.get(CONTEXTS_NS, str(chat_id))
        return UserContext.from_dict(raw) if raw else None

    async def get_user_stats(self) -> dict:
        since = utcnow() - timedelta(hours=24)
        contexts = [UserContext.from_dict(c) for c in await self.store.values(CONTEXTS_NS)]
        return {
            "total_users": len(contexts),
            "active_users": sum(1 for c in contexts if c.last_active > since),
            "new_users": sum(1 for c in contexts if c.joined_at > since),
        }

    async def get_flow_stats(self) -> List[dict]:
        out = []
        for flow in await self.get_all_flows():
            triggered = flow.stats.triggered
            out.append({
                "flow_id": flow.id,
                "name": flow.name,
                "triggered": triggered,
                "completed": flow.stats.completed,
                "success_rate": (flow.stats.completed / triggered) * 100 if triggered else 0,
                "last_triggered": flow.stats.to_dict()["last_triggered"],
            })
        return out
