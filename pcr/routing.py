from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from .context import ReconcileContext
from .errors import RoutingError, RoutingValidationError
from .experiment import Experiment
from .kube import KubeAPI
from .rules import (
    KIALI_TRAFFIC_SHIFTING,
    LABEL_EXPERIMENT,
    LABEL_INIT,
    LABEL_KIALI_WIZARD,
    LABEL_ROLE,
    LABEL_ROUTER,
    MESH_GATEWAY,
    ROUTE_BASE,
    ROUTE_EXPERIMENT,
    SUBSET_BASELINE,
    DestinationStrategy,
    Role,
    candidate_subset_name,
    clone,
    default_host,
    experiment_route,
    labels_of,
    new_destination_rule,
    new_virtual_service,
    role_of,
    router_id,
    rule_name,
    service_host,
    strategy_for,
    subset_for,
    unique,
)

KIND_DR = "DestinationRule"
KIND_VS = "VirtualService"


@dataclass
class RoutingRuleSet:
    """DestinationRule + VirtualService realizing one host's canary split.

    role/owner/init are the typed view of the iter8-tools labels; they are
    written back onto both objects whenever the set is persisted.
    """

    router_id: str
    route_table: dict[str, Any]
    traffic_policy: dict[str, Any] | None
    role: Role
    owner: str | None = None
    init: bool = False  # objects were created for the owning experiment
    fresh: bool = False  # built locally, never persisted

    @property
    def namespace(self) -> str:
        return self.route_table["metadata"]["namespace"]

    def is_progressing(self) -> bool:
        return self.role is Role.PROGRESSING

    def is_initializing(self) -> bool:
        return self.role is Role.INITIALIZING

    def is_stable(self) -> bool:
        return self.role is Role.STABLE

    def describe(self) -> str:
        dr = self.traffic_policy["metadata"]["name"] if self.traffic_policy else "-"
        return (
            f"router={self.router_id} role={self.role.value} owner={self.owner or '-'} "
            f"vs={self.route_table['metadata']['name']} dr={dr}"
        )


def stamp_labels(obj: dict[str, Any], rules: RoutingRuleSet) -> None:
    """Write the rule set's role, owner and router id onto one object."""
    md = obj.setdefault("metadata", {})
    labels = dict(md.get("labels") or {})
    labels[LABEL_ROUTER] = rules.router_id
    labels[LABEL_ROLE] = rules.role.value
    if rules.owner:
        labels[LABEL_EXPERIMENT] = rules.owner
    else:
        labels.pop(LABEL_EXPERIMENT, None)
    if rules.init:
        labels[LABEL_INIT] = "True"
    else:
        labels.pop(LABEL_INIT, None)
    if rules.role is Role.STABLE:
        labels[LABEL_KIALI_WIZARD] = KIALI_TRAFFIC_SHIFTING
    else:
        labels.pop(LABEL_KIALI_WIZARD, None)
    md["labels"] = labels


class Router:
    """Builds, validates and persists the routing rules of one experiment."""

    def __init__(self, client: KubeAPI, strategy: DestinationStrategy, ctx: ReconcileContext | None = None):
        self.client = client
        self.strategy = strategy
        self.ctx = ctx

    @classmethod
    def for_experiment(cls, client: KubeAPI, exp: Experiment, ctx: ReconcileContext | None = None) -> "Router":
        return cls(client, strategy_for(exp), ctx)

    def _info(self, message: str) -> None:
        if self.ctx is not None:
            self.ctx.info(message)

    # Fetch / validate

    def fetch(self, exp: Experiment) -> RoutingRuleSet:
        """Load this experiment's routing rules from the cluster.

        Raises RoutingValidationError when what is found cannot be used.
        """
        rid = router_id(exp)
        ns = exp.service_namespace()
        selector = {LABEL_ROUTER: rid}
        drl: list[dict[str, Any]] = []
        if self.strategy.requires_traffic_policy:
            drl = self.client.list_routing(KIND_DR, ns, selector)
        vsl = self.client.list_routing(KIND_VS, ns, selector)
        return self.validate(drl, vsl, exp)

    def validate(self, drl: list[dict[str, Any]], vsl: list[dict[str, Any]], exp: Experiment) -> RoutingRuleSet:
        rid = router_id(exp)
        ns = exp.service_namespace()
        owner = exp.full_name
        needs_dr = self.strategy.requires_traffic_policy
        if not needs_dr:
            drl = []

        if not drl and not vsl:
            name = rule_name(rid)
            dr = new_destination_rule(name, default_host(exp), ns) if needs_dr else None
            rules = RoutingRuleSet(
                router_id=rid,
                route_table=new_virtual_service(name, ns),
                traffic_policy=dr,
                role=Role.INITIALIZING,
                owner=owner,
                init=True,
                fresh=True,
            )
            for obj in (rules.route_table, rules.traffic_policy):
                if obj is not None:
                    stamp_labels(obj, rules)
            return rules

        if len(vsl) != 1 or len(drl) != (1 if needs_dr else 0):
            raise RoutingValidationError(f"{len(drl)} DestinationRule and {len(vsl)} VirtualService found for {rid}")

        vs = clone(vsl[0])
        dr = clone(drl[0]) if needs_dr else None
        objs = [o for o in (vs, dr) if o is not None]

        roles = {role_of(o) for o in objs}
        if None in roles:
            raise RoutingValidationError(f"role label missing in routing rules for {rid}")
        if len(roles) != 1:
            raise RoutingValidationError(f"routing rules for {rid} disagree on role: {sorted(r.value for r in roles)}")
        role = roles.pop()

        owners = {labels_of(o).get(LABEL_EXPERIMENT) for o in objs}
        init = all(labels_of(o).get(LABEL_INIT) == "True" for o in objs)
        if role is Role.STABLE:
            return RoutingRuleSet(router_id=rid, route_table=vs, traffic_policy=dr, role=role, owner=None, init=init)

        if owners != {owner}:
            others = sorted(o or "<none>" for o in owners)
            raise RoutingValidationError(f"routing rules for {rid} are owned by {', '.join(others)}, not {owner}")
        return RoutingRuleSet(router_id=rid, route_table=vs, traffic_policy=dr, role=role, owner=owner, init=init)

    # Mutations

    def initialize_with_baseline(
        self, rules: RoutingRuleSet, exp: Experiment, baseline: dict[str, Any]
    ) -> RoutingRuleSet:
        """Send all traffic of the experiment host to the baseline."""
        if rules.is_progressing() or (rules.is_initializing() and not rules.fresh):
            return rules

        svc = exp.spec.service
        vs = clone(rules.route_table)
        spec = vs.setdefault("spec", {})

        hosts: list[str] = []
        gateways: list[str] = []
        if svc.name:
            hosts.append(service_host(svc.name, exp.service_namespace()))
            gateways.append(MESH_GATEWAY)
        if exp.spec.networking is not None:
            for h in exp.spec.networking.hosts:
                hosts.append(h.name)
                gateways.append(h.gateway)
        spec["hosts"] = unique(hosts)
        spec["gateways"] = unique(gateways)

        baseline_dest = self.strategy.build_destination(exp, svc.baseline, 100, SUBSET_BASELINE)
        route: dict[str, Any] = {"name": ROUTE_EXPERIMENT, "route": [baseline_dest]}
        match = exp.match_rules()
        if match:
            route["match"] = copy.deepcopy(match)
        spec["http"] = [route]
        if match:
            spec["http"].append({"name": ROUTE_BASE, "route": [clone(baseline_dest)]})

        rules.role = Role.INITIALIZING
        rules.owner = exp.full_name
        create = rules.fresh and rules.init
        rules.route_table = self._persist(KIND_VS, vs, rules, create)

        if self.strategy.requires_traffic_policy:
            dr = clone(rules.traffic_policy) or new_destination_rule(
                rule_name(rules.router_id), default_host(exp), rules.namespace
            )
            dr.setdefault("spec", {})["host"] = default_host(exp)
            dr["spec"]["subsets"] = [subset_for(baseline, SUBSET_BASELINE)]
            rules.traffic_policy = self._persist(KIND_DR, dr, rules, create)

        rules.fresh = False
        assessment = exp.ensure_assessment()
        assessment.baseline.name = svc.baseline
        assessment.baseline.weight = 100
        self._info(f"Routing initialized with baseline {svc.baseline}: {rules.describe()}")
        return rules

    def add_candidates(
        self, rules: RoutingRuleSet, exp: Experiment, candidates: list[dict[str, Any]]
    ) -> RoutingRuleSet:
        """Add a zero-weight destination and a subset per candidate."""
        if rules.is_progressing():
            return rules

        vs = clone(rules.route_table)
        route = experiment_route(vs)
        if route is None:
            raise RoutingError(f"experiment route missing in VirtualService {vs['metadata']['name']}")

        for i, name in enumerate(exp.spec.service.candidates):
            route["route"].append(self.strategy.build_destination(exp, name, 0, candidate_subset_name(i)))

        rules.role = Role.PROGRESSING
        rules.route_table = self._persist(KIND_VS, vs, rules, create=False)

        if self.strategy.requires_traffic_policy:
            dr = clone(rules.traffic_policy)
            subsets = dr.setdefault("spec", {}).setdefault("subsets", [])
            for i, candidate in enumerate(candidates):
                subsets.append(subset_for(candidate, candidate_subset_name(i)))
            rules.traffic_policy = self._persist(KIND_DR, dr, rules, create=False)

        self._info(f"Routing progressing with {len(exp.spec.service.candidates)} candidate(s): {rules.describe()}")
        return rules

    def apply_traffic_update(self, rules: RoutingRuleSet, exp: Experiment) -> RoutingRuleSet:
        """Copy the experiment's assessment weights into the experiment route."""
        vs = clone(rules.route_table)
        route = experiment_route(vs)
        if route is None:
            raise RoutingError(f"experiment route missing in VirtualService {vs['metadata']['name']}")
        self._fill_route(route, exp)
        rules.route_table = self._persist(KIND_VS, vs, rules, create=False)
        self._info(f"Traffic updated to {exp.ensure_assessment().weights()}")
        return rules

    def converge_to_stable(
        self, rules: RoutingRuleSet | None, exp: Experiment, delete: bool = True
    ) -> RoutingRuleSet | None:
        """Leave routing in its final state for this experiment.

        With cleanup on rules created for the experiment, both objects are
        deleted and None is returned. When delete is False such rules are
        kept owned, carrying the last weights, until a later call deletes
        them. Otherwise progressing rules keep the last weights in a single
        unconditional route, and the set is relabeled stable with the
        ownership label dropped.
        """
        if rules is None or rules.fresh or not (rules.is_progressing() or rules.is_initializing()):
            self._info("Routing rules not initialized by this experiment; nothing to converge")
            return rules

        ns = rules.namespace
        if exp.cleanup() and rules.init:
            if not delete:
                if rules.is_progressing():
                    rules = self.apply_traffic_update(rules, exp)
                self._info(f"Routing rules held for cleanup: {rules.describe()}")
                return rules
            self.client.delete_routing(KIND_VS, ns, rules.route_table["metadata"]["name"])
            if self.strategy.requires_traffic_policy and rules.traffic_policy is not None:
                self.client.delete_routing(KIND_DR, ns, rules.traffic_policy["metadata"]["name"])
            self._info(f"Routing rules deleted: {rules.describe()}")
            return None

        vs = clone(rules.route_table)
        if rules.is_progressing():
            route = experiment_route(vs)
            if route is not None:
                self._fill_route(route, exp)
                route.pop("name", None)
                route.pop("match", None)
                vs["spec"]["http"] = [route]

        rules.role = Role.STABLE
        rules.owner = None
        rules.init = False
        rules.route_table = self._persist(KIND_VS, vs, rules, create=False)
        if self.strategy.requires_traffic_policy and rules.traffic_policy is not None:
            rules.traffic_policy = self._persist(KIND_DR, clone(rules.traffic_policy), rules, create=False)
        self._info(f"Routing converged to stable: {rules.describe()}")
        return rules

    # Helpers

    def _fill_route(self, route: dict[str, Any], exp: Experiment) -> None:
        assessment = exp.ensure_assessment()
        destinations = [
            self.strategy.build_destination(exp, assessment.baseline.name, assessment.baseline.weight, SUBSET_BASELINE)
        ]
        for i, c in enumerate(assessment.candidates):
            destinations.append(self.strategy.build_destination(exp, c.name, c.weight, candidate_subset_name(i)))
        route["route"] = destinations

    def _persist(self, kind: str, obj: dict[str, Any], rules: RoutingRuleSet, create: bool) -> dict[str, Any]:
        stamp_labels(obj, rules)
        if create:
            saved = self.client.create_routing(kind, rules.namespace, obj)
        else:
            saved = self.client.update_routing(kind, rules.namespace, obj)
        return clone(saved)
