from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from .adapter import ExperimentAction
from .analytics import Assessor, MetricsReader, NullMetrics
from .cache import TargetCache, experiment_targets
from .context import ReconcileContext
from .db import EventLog, utc_now
from .errors import Conflict, MetricsSyncError, NotFound, RoutingValidationError, TargetConflictError, TargetNotFound
from .experiment import FINALIZER, ConditionType, Experiment, Phase
from .kube import KubeAPI
from .routing import Router, RoutingRuleSet
from .settings import Settings
from .targets import delete_candidates, resolve_targets

RouterFactory = Callable[[KubeAPI, Experiment, ReconcileContext], Router]


@dataclass(frozen=True)
class Result:
    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class _StaleExperiment(Exception):
    pass


class _ExperimentGone(Exception):
    pass


class Reconciler:
    """Moves one experiment one step closer to its desired routing state."""

    def __init__(
        self,
        client: KubeAPI,
        cache: TargetCache,
        events: EventLog,
        cfg: Settings,
        assessor: Assessor,
        metrics: MetricsReader | None = None,
        router_factory: RouterFactory = Router.for_experiment,
    ):
        self.client = client
        self.cache = cache
        self.events = events
        self.cfg = cfg
        self.assessor = assessor
        self.metrics = metrics or NullMetrics()
        self.router_factory = router_factory

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one step for namespace/name.

        An experiment update conflict ends the step with a retry after the
        interval and a vanished experiment ends it quietly; any other error
        propagates so the caller retries with backoff.
        """
        try:
            obj = self.client.get_experiment(namespace, name)
        except NotFound:
            return Result()

        exp = Experiment.from_object(obj)
        ctx = ReconcileContext(namespace, name, self.events)
        terminal = exp.completed() and not exp.deleting()
        try:
            return self._reconcile(ctx, exp)
        except _StaleExperiment as e:
            if terminal:
                ctx.info(f"Experiment changed during reconcile ({e})")
                return Result()
            interval = exp.interval_seconds(self.cfg.default_interval_s)
            ctx.info(f"Experiment changed during reconcile, retry in {interval:g}s ({e})")
            return Result(requeue_after=interval)
        except _ExperimentGone:
            return Result()

    def _reconcile(self, ctx: ReconcileContext, exp: Experiment) -> Result:
        if exp.status.init_timestamp is None:
            exp.init_status()
            self._update_status(exp)
            ctx.info("Experiment initialized")

        if FINALIZER not in exp.metadata.finalizers and not exp.deleting():
            exp.metadata.finalizers.append(FINALIZER)
            self._update(exp)

        if exp.deleting():
            return self._finalize(ctx, exp)

        if exp.completed():
            self.cache.unregister_experiment(exp.key)
            return Result()

        before = self._status_of(exp)
        try:
            adapter = self.cache.register_experiment(exp.key, experiment_targets(exp))
        except TargetConflictError as e:
            exp.status.phase = Phase.PAUSE
            exp.status.message = f"TargetsConflict: {e}"
            exp.status.set_condition(ConditionType.TARGETS_PROVIDED, False, "TargetsConflict", str(e))
            self._persist(exp, before)
            ctx.error(f"Target registration failed: {e}")
            return Result(requeue_after=exp.interval_seconds(self.cfg.default_interval_s))

        self._clear_conflict(ctx, exp)
        action = adapter.snapshot()
        self._apply_action(ctx, exp, action)

        gate = self._proceed(ctx, exp, action, before)
        if gate is not None:
            return gate

        if exp.has_criteria() and not exp.status.metrics_synced():
            try:
                self.metrics.sync(ctx, exp)
            except MetricsSyncError as e:
                exp.status.set_condition(ConditionType.METRICS_SYNCED, False, "SyncMetricsError", str(e))
                self._persist(exp, before)
                ctx.error(f"Fail to read metrics: {e}")
                raise
            exp.status.set_condition(ConditionType.METRICS_SYNCED, True, "SyncMetricsSucceeded")

        return self._sync_routing(ctx, exp, action, before)

    # Actions and gates

    def _clear_conflict(self, ctx: ReconcileContext, exp: Experiment) -> None:
        cond = exp.status.condition(ConditionType.TARGETS_PROVIDED)
        if exp.status.phase == Phase.PAUSE and cond is not None and cond.reason == "TargetsConflict":
            exp.status.phase = Phase.PROGRESSING if exp.status.current_iteration else Phase.INITIALIZING
            exp.status.set_condition(ConditionType.TARGETS_PROVIDED, True, "TargetsRegistered")
            ctx.info("Targets registered after earlier conflict")

    def _apply_action(self, ctx: ReconcileContext, exp: Experiment, action: ExperimentAction) -> None:
        if exp.terminate():
            self._override_assessment(ctx, exp)
        elif action.refresh:
            self._override_assessment(ctx, exp)
            msg = f"{action.describe()} was deleted"
            exp.status.set_condition(ConditionType.TARGETS_PROVIDED, False, "TargetDeleted", msg)
            ctx.error(msg)
        elif action.resume and exp.status.phase == Phase.PAUSE and not exp.pause():
            exp.status.phase = Phase.PROGRESSING
            exp.status.set_condition(ConditionType.TARGETS_PROVIDED, True, "TargetsFound", action.describe())
            ctx.info(f"{action.describe()} detected, resuming")

    def _override_assessment(self, ctx: ReconcileContext, exp: Experiment) -> None:
        """Pin the assessment to the split the experiment should end with."""
        assessment = exp.ensure_assessment()
        mo = exp.spec.manual_override
        if exp.terminate() and mo is not None and mo.traffic_split:
            split = mo.traffic_split
            total = sum(split.get(n, 0) for n in [assessment.baseline.name] + [c.name for c in assessment.candidates])
            if total == 100:
                assessment.baseline.weight = split.get(assessment.baseline.name, 0)
                for c in assessment.candidates:
                    c.weight = split.get(c.name, 0)
                return
            ctx.warn(f"Ignoring trafficSplit summing to {total}")
        if assessment.total() != 100:
            assessment.baseline.weight = 100
            for c in assessment.candidates:
                c.weight = 0

    def _proceed(
        self, ctx: ReconcileContext, exp: Experiment, action: ExperimentAction, before: dict[str, Any]
    ) -> Result | None:
        """Return a Result when the step must stop here, None to carry on."""
        if exp.terminate():
            return None

        # pause wins over every other signal, a deleted target included
        if exp.pause():
            if exp.status.phase != Phase.PAUSE:
                exp.status.phase = Phase.PAUSE
                exp.status.message = "Paused by manual override"
                ctx.info("Experiment paused")
            self._persist(exp, before)
            return Result()

        if action.refresh:
            return None

        if exp.status.phase == Phase.PAUSE:
            if exp.resume():
                exp.spec.manual_override = None
                self._update(exp)
                exp.status.phase = Phase.PROGRESSING
                exp.status.message = "Resumed by manual override"
                ctx.info("Experiment resumed")
                return None
            self._persist(exp, before)
            return Result()
        return None

    # Routing

    def _sync_routing(
        self, ctx: ReconcileContext, exp: Experiment, action: ExperimentAction, before: dict[str, Any]
    ) -> Result:
        router = self.router_factory(self.client, exp, ctx)
        try:
            rules = router.fetch(exp)
        except RoutingValidationError as e:
            exp.status.phase = Phase.COMPLETED
            exp.status.message = f"RoutingRulesError: {e}"
            exp.status.set_condition(ConditionType.ROUTING_RULES_READY, False, "RoutingRulesError", str(e))
            self.cache.unregister_experiment(exp.key)
            self._persist(exp, before)
            ctx.error(f"Routing rules rejected: {e}")
            return Result()

        if exp.terminate():
            return self._complete(ctx, exp, router, rules, before, "ExperimentTerminated", "Terminated by manual override")
        if action.refresh:
            return self._complete(ctx, exp, router, rules, before, "TargetDeleted", f"{action.describe()} was deleted")

        try:
            targets = resolve_targets(self.client, exp, self.cfg)
        except TargetNotFound as e:
            exp.status.phase = Phase.PAUSE
            exp.status.message = f"TargetsNotFound: {e}"
            exp.status.set_condition(ConditionType.TARGETS_PROVIDED, False, "TargetsNotFound", str(e))
            self._persist(exp, before)
            ctx.warn(f"Waiting for targets: {e}")
            return Result()

        for ref in experiment_targets(exp):
            self.cache.mark_found(ref.kind, ref.name, ref.namespace, notify=False)
        exp.status.set_condition(ConditionType.TARGETS_PROVIDED, True, "TargetsFound")

        rules = router.initialize_with_baseline(rules, exp, targets.baseline)
        rules = router.add_candidates(rules, exp, targets.candidates)
        exp.status.set_condition(ConditionType.ROUTING_RULES_READY, True, "RoutingRulesReady")

        interval = exp.interval_seconds(self.cfg.default_interval_s)
        if exp.status.phase in (None, Phase.INITIALIZING):
            exp.status.phase = Phase.PROGRESSING
            exp.status.message = "Traffic shifting started"
            self._persist(exp, before)
            return Result(requeue_after=interval)

        if exp.status.current_iteration >= exp.max_iterations(self.cfg.default_max_iterations):
            return self._complete(ctx, exp, router, rules, before, "ExperimentCompleted", "Last iteration was completed")

        if exp.has_criteria():
            exp.status.assessment = self.assessor.assess(ctx, exp)
        router.apply_traffic_update(rules, exp)
        exp.status.current_iteration += 1
        exp.status.message = f"Iteration {exp.status.current_iteration} completed"
        self._persist(exp, before)
        return Result(requeue_after=interval)

    def _complete(
        self,
        ctx: ReconcileContext,
        exp: Experiment,
        router: Router,
        rules: RoutingRuleSet,
        before: dict[str, Any],
        reason: str,
        message: str,
    ) -> Result:
        if exp.ensure_assessment().total() != 100:
            self._override_assessment(ctx, exp)
        # rules marked for cleanup are only deleted by finalize
        router.converge_to_stable(rules, exp, delete=False)
        exp.status.phase = Phase.COMPLETED
        exp.status.message = f"{reason}: {message}"
        exp.status.set_condition(ConditionType.EXPERIMENT_COMPLETED, True, reason, message)
        self.cache.unregister_experiment(exp.key)
        self._persist(exp, before)
        ctx.info(f"Experiment completed ({reason}) with split {exp.ensure_assessment().weights()}")
        return Result()

    def _finalize(self, ctx: ReconcileContext, exp: Experiment) -> Result:
        ctx.info("Finalizing")
        router = self.router_factory(self.client, exp, ctx)
        try:
            rules: RoutingRuleSet | None = router.fetch(exp)
        except RoutingValidationError as e:
            ctx.warn(f"Leaving routing rules untouched: {e}")
            rules = None
        deleted = rules is not None and router.converge_to_stable(rules, exp) is None

        if deleted and self.cfg.delete_candidates_on_cleanup:
            for failure in delete_candidates(self.client, exp):
                ctx.warn(f"Candidate cleanup failed: {failure}")

        self.cache.unregister_experiment(exp.key)
        if FINALIZER in exp.metadata.finalizers:
            exp.metadata.finalizers = [f for f in exp.metadata.finalizers if f != FINALIZER]
            self._update(exp)
            ctx.info("Finalizer removed")
        return Result()

    # Persistence

    @staticmethod
    def _status_of(exp: Experiment) -> dict[str, Any]:
        return exp.status.model_dump(mode="json")

    def _persist(self, exp: Experiment, before: dict[str, Any]) -> None:
        """Write status only when it changed during this step."""
        if self._status_of(exp) == before:
            return
        exp.status.last_update_time = utc_now()
        self._update_status(exp)

    def _update_status(self, exp: Experiment) -> None:
        self._write(exp, self.client.update_experiment_status)

    def _update(self, exp: Experiment) -> None:
        self._write(exp, self.client.update_experiment)

    def _write(self, exp: Experiment, call: Callable[[dict[str, Any]], dict[str, Any]]) -> None:
        try:
            saved = call(exp.to_object())
        except Conflict as e:
            raise _StaleExperiment(str(e)) from e
        except NotFound as e:
            raise _ExperimentGone(str(e)) from e
        rv = (saved.get("metadata") or {}).get("resourceVersion")
        if rv is not None:
            exp.metadata.resource_version = rv
