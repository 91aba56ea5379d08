"""
Well-Architected Review Service
AWS Environment Data Provider.

Collects signals from the reviewed AWS account. ``collect()`` fans out to six
independent collectors on a thread pool and joins them with a bounded wait:

    trusted_advisor  Support API Trusted Advisor checks (Business/Enterprise plans)
    cost             Cost Explorer: 30 days of daily cost by service + rightsizing
    iam              Credential report findings + customer-managed policies
    compute          EC2 instances and EBS volumes
    cloudwatch       7 days of hourly EC2 CPU utilisation
    config           AWS Config rules and their compliance

A failing collector never aborts the others: its outcome is recorded with an
error category (SUBSCRIPTION_REQUIRED, ACCESS_DENIED, TIMEOUT, GENERAL_ERROR).
SUBSCRIPTION_REQUIRED is reported as a warning, the rest as errors.

``refresh()`` re-runs a subset of collectors into an existing snapshot and
``analyze()`` runs one collector on its own, letting its errors propagate.

Every boto3 client is built with connect/read timeouts and bounded retries,
from a Session owned by the provider. Client creation is serialized because
boto3 sessions are not safe to share across threads while building clients.
Tests pass ``client_factory`` to inject fake clients.
"""

import contextvars
import csv
import io
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, datetime, timedelta, timezone

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

# ── Error categories ───────────────────────────────────────────────────────
SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
ACCESS_DENIED = "ACCESS_DENIED"
TIMEOUT = "TIMEOUT"
GENERAL_ERROR = "GENERAL_ERROR"

_ACCESS_DENIED_CODES = {
    "AccessDenied", "AccessDeniedException", "UnauthorizedOperation",
    "UnrecognizedClientException", "AuthFailure", "OptInRequired",
}

# Support API (Trusted Advisor) only has a us-east-1 endpoint
_SUPPORT_REGION = "us-east-1"

COLLECTORS = ("trusted_advisor", "cost", "iam", "compute", "cloudwatch", "config")

_CONFIG_RULE_LIMIT = 10
_TOP_SERVICES = 10


class CollectorOutcome:
    """Result of one collector run.

    Attributes:
        name:            Collector name (e.g. "cost").
        ok:              True if the collector returned data.
        data:            Collector payload (None on failure, placeholder for SUBSCRIPTION_REQUIRED).
        error_category:  One of the error category constants, or None.
        message:         Human-readable failure message, or None.
        duration_ms:     Wall time of the collector.
    """

    def __init__(self, name, ok, data=None, error_category=None, message=None, duration_ms=0):
        self.name = name
        self.ok = ok
        self.data = data
        self.error_category = error_category
        self.message = message
        self.duration_ms = duration_ms

    @property
    def is_warning(self) -> bool:
        return not self.ok and self.error_category == SUBSCRIPTION_REQUIRED

    def to_dict(self) -> dict:
        d = {"status": "ok" if self.ok else "unavailable", "duration_ms": self.duration_ms}
        if not self.ok:
            d["error_category"] = self.error_category
            d["message"] = self.message
        if self.data is not None:
            d["data"] = self.data
        return d


def classify_error(exc: Exception) -> str:
    """Map a collector exception to an error category."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code == "SubscriptionRequiredException":
            return SUBSCRIPTION_REQUIRED
        if code in _ACCESS_DENIED_CODES:
            return ACCESS_DENIED
        return GENERAL_ERROR
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError, TimeoutError)):
        return TIMEOUT
    return GENERAL_ERROR


def _jsonable(obj):
    """Round-trip through JSON so datetimes and Decimals become plain values."""
    return json.loads(json.dumps(obj, default=str))


# ── Analysis helpers ─────────────────────────────────────────────────────────

def calculate_total_cost(cost_data: dict) -> float:
    total = 0.0
    for result in cost_data.get("ResultsByTime", []):
        amount = result.get("Total", {}).get("UnblendedCost", {}).get("Amount")
        if amount:
            total += float(amount)
        else:
            # Grouped queries report cost per group, not in Total
            for group in result.get("Groups", []):
                total += float(group.get("Metrics", {}).get("UnblendedCost", {}).get("Amount", 0))
    return round(total, 2)


def top_services(cost_data: dict, limit: int = _TOP_SERVICES) -> list[dict]:
    costs: dict[str, float] = {}
    for result in cost_data.get("ResultsByTime", []):
        for group in result.get("Groups", []):
            keys = group.get("Keys") or []
            if not keys:
                continue
            amount = float(group.get("Metrics", {}).get("UnblendedCost", {}).get("Amount", 0))
            costs[keys[0]] = costs.get(keys[0], 0.0) + amount
    ranked = sorted(costs.items(), key=lambda kv: kv[1], reverse=True)[:limit]
    return [{"service": service, "cost": round(cost, 2)} for service, cost in ranked]


def daily_costs(cost_data: dict) -> list[dict]:
    """One {date, amount} entry per ResultsByTime period, oldest first."""
    days = []
    for result in cost_data.get("ResultsByTime", []):
        amount = sum(
            float(g.get("Metrics", {}).get("UnblendedCost", {}).get("Amount", 0))
            for g in result.get("Groups", [])
        )
        if not result.get("Groups"):
            amount = float(result.get("Total", {}).get("UnblendedCost", {}).get("Amount", 0))
        days.append({"date": result.get("TimePeriod", {}).get("Start"), "amount": round(amount, 2)})
    return days


def cost_trend(cost_data: dict) -> str:
    """Compare the average daily cost of the last 7 days with the 7 before (±10%)."""
    daily = [d["amount"] for d in daily_costs(cost_data)]

    if len(daily) < 14:
        return "insufficient_data"
    recent = sum(daily[-7:]) / 7
    previous = sum(daily[-14:-7]) / 7
    if recent > previous * 1.1:
        return "increasing"
    if recent < previous * 0.9:
        return "decreasing"
    return "stable"


def cost_recommendations(rightsizing: list[dict]) -> list[dict]:
    recs = [
        {
            "type": "rightsizing",
            "title": "Instance Rightsizing Opportunity",
            "description": (
                f"Consider {rec.get('RightsizingType', 'MODIFY')} for instance "
                f"{rec.get('CurrentInstance', {}).get('ResourceId', 'unknown')}"
            ),
            "estimated_savings": (
                rec.get("ModifyRecommendationDetail", {}).get("TargetInstances") or [{}]
            )[0].get("EstimatedMonthlySavings"),
            "priority": "high",
        }
        for rec in rightsizing
    ]
    recs.append({
        "type": "monitoring",
        "title": "Cost Monitoring",
        "description": "Set up billing alerts and cost budgets to monitor spending",
        "priority": "medium",
    })
    return recs


def parse_credential_report(content: bytes | str) -> list[dict]:
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    return [dict(row) for row in csv.DictReader(io.StringIO(content))]


def security_findings(users: list[dict]) -> list[dict]:
    findings = []
    for user in users:
        name = user.get("user")
        if user.get("password_enabled") == "true" and user.get("mfa_active") == "false":
            findings.append({
                "type": "mfa_disabled",
                "severity": "high",
                "resource": name,
                "description": "User has password enabled but MFA is not active",
            })
        for n in (1, 2):
            if (user.get(f"access_key_{n}_active") == "true"
                    and user.get(f"access_key_{n}_last_used_date") in ("N/A", "", None)):
                findings.append({
                    "type": "unused_access_key",
                    "severity": "medium",
                    "resource": name,
                    "description": f"Access key {n} is active but has never been used",
                })
    return findings


_FINDING_RECOMMENDATIONS = {
    "mfa_disabled": ("High", "Enable MFA", "Require MFA for every user with console access"),
    "unused_access_key": ("Medium", "Remove Unused Access Key",
                          "Deactivate or delete access keys that have never been used"),
}


def security_recommendations(findings: list[dict]) -> list[dict]:
    """Prioritized Security pillar actions, one per IAM finding."""
    recs = []
    for finding in findings:
        priority, title, action = _FINDING_RECOMMENDATIONS.get(
            finding.get("type"), ("Low", "Review Security Finding", "Manual review required"),
        )
        recs.append({
            "priority": priority,
            "title": title,
            "description": finding.get("description"),
            "resource": finding.get("resource"),
            "action": action,
            "pillar": "Security",
        })
    return recs


def analyze_instances(instances: list[dict]) -> dict:
    types: dict[str, int] = {}
    for inst in instances:
        types[inst["instance_type"]] = types.get(inst["instance_type"], 0) + 1
    return {
        "total": len(instances),
        "running": sum(1 for i in instances if i["state"] == "running"),
        "stopped": sum(1 for i in instances if i["state"] == "stopped"),
        "instance_types": types,
    }


def analyze_volumes(volumes: list[dict]) -> dict:
    encrypted = sum(1 for v in volumes if v["encrypted"])
    return {
        "total": len(volumes),
        "attached": sum(1 for v in volumes if v["attachments"]),
        "unattached": sum(1 for v in volumes if not v["attachments"]),
        "encrypted": encrypted,
        "unencrypted": len(volumes) - encrypted,
        "total_size_gb": sum(v["size"] or 0 for v in volumes),
    }


def compute_recommendations(instances: list[dict], volumes: list[dict]) -> list[dict]:
    recs = []
    stopped = [i for i in instances if i["state"] == "stopped"]
    if stopped:
        recs.append({
            "type": "stopped_instances",
            "title": "Review Stopped Instances",
            "description": f"{len(stopped)} stopped instances found. Consider terminating if no longer needed.",
            "priority": "medium",
        })
    unattached = [v for v in volumes if not v["attachments"]]
    if unattached:
        recs.append({
            "type": "unattached_volumes",
            "title": "Clean Up Unattached Volumes",
            "description": f"{len(unattached)} unattached volumes found. Consider deleting if no longer needed.",
            "priority": "high",
        })
    unencrypted = [v for v in volumes if not v["encrypted"]]
    if unencrypted:
        recs.append({
            "type": "volume_encryption",
            "title": "Enable Volume Encryption",
            "description": f"{len(unencrypted)} unencrypted volumes found. Enable encryption for better security.",
            "priority": "high",
        })
    return recs


_TA_CATEGORY_ADVICE = {
    "cost_optimizing": "Review and implement cost optimization strategies",
    "security": "Address security vulnerabilities and implement best practices",
    "fault_tolerance": "Improve reliability and fault tolerance mechanisms",
    "performance": "Optimize performance and resource utilization",
    "service_limits": "Monitor and adjust service limits as needed",
}


def summarize_trusted_advisor(check_results: list[dict]) -> dict:
    summary = {"error": 0, "warning": 0, "ok": 0, "not_available": 0, "categories": {}}
    for check in check_results:
        status = (check.get("result") or {}).get("status") or "not_available"
        summary[status] = summary.get(status, 0) + 1
        cat = summary["categories"].setdefault(
            check.get("category", "unknown"),
            {"error": 0, "warning": 0, "ok": 0, "not_available": 0},
        )
        cat[status] = cat.get(status, 0) + 1
    return summary


def trusted_advisor_recommendations(check_results: list[dict]) -> list[dict]:
    recs = []
    for check in check_results:
        status = (check.get("result") or {}).get("status")
        if status in ("error", "warning"):
            recs.append({
                "category": check.get("category"),
                "check_name": check.get("name"),
                "status": status,
                "description": check.get("description"),
                "recommendation": _TA_CATEGORY_ADVICE.get(
                    check.get("category"), "Review and address the identified issue"
                ),
                "priority": "High" if status == "error" else "Medium",
            })
    return recs


def performance_insights(datapoints: list[dict]) -> dict:
    if not datapoints:
        return {"summary": "No performance data available"}
    avg_cpu = sum(dp.get("Average", 0) for dp in datapoints) / len(datapoints)
    max_cpu = max(dp.get("Maximum", 0) for dp in datapoints)
    if avg_cpu < 20:
        advice = "Consider downsizing instances"
    elif avg_cpu > 80:
        advice = "Consider scaling up or out"
    else:
        advice = "CPU utilization is within optimal range"
    return {
        "average_cpu_utilization": round(avg_cpu, 2),
        "max_cpu_utilization": round(max_cpu, 2),
        "recommendation": advice,
    }


def summarize_compliance(results: list[dict]) -> dict:
    summary = {"compliant": 0, "non_compliant": 0, "not_applicable": 0}
    for rule in results:
        for item in rule.get("compliance", []):
            status = item.get("ComplianceType")
            if status == "COMPLIANT":
                summary["compliant"] += 1
            elif status == "NON_COMPLIANT":
                summary["non_compliant"] += 1
            else:
                summary["not_applicable"] += 1
    return summary


def generate_summary(data: dict) -> dict:
    """Overall health and per-pillar insight scores from collector payloads.

    ``data`` maps collector name to its payload (None when unavailable).
    Pillar scores start at 4 and drop to 3 when a collector reports findings.
    """
    insights = {
        name: {"score": 4, "findings": []}
        for name in (
            "Operational Excellence", "Security", "Reliability",
            "Performance Efficiency", "Cost Optimization", "Sustainability",
        )
    }
    critical, warnings = 0, 0

    ta = data.get("trusted_advisor") or {}
    if ta.get("summary"):
        critical += ta["summary"].get("error", 0) or 0
        warnings += ta["summary"].get("warning", 0) or 0

    cost = data.get("cost") or {}
    if cost.get("rightsizing_recommendations"):
        insights["Cost Optimization"]["score"] = 3
        insights["Cost Optimization"]["findings"].append("Rightsizing opportunities identified")

    iam = data.get("iam") or {}
    if iam.get("security_findings"):
        insights["Security"]["score"] = 3
        insights["Security"]["findings"].append("IAM security improvements needed")

    compute = data.get("compute") or {}
    if (compute.get("volume_analysis") or {}).get("unencrypted"):
        insights["Security"]["findings"].append("Unencrypted EBS volumes present")

    cw = (data.get("cloudwatch") or {}).get("performance_insights") or {}
    avg_cpu = cw.get("average_cpu_utilization")
    if avg_cpu is not None and (avg_cpu < 20 or avg_cpu > 80):
        insights["Performance Efficiency"]["score"] = 3
        insights["Performance Efficiency"]["findings"].append("CPU utilization optimization needed")

    cfg = (data.get("config") or {}).get("summary") or {}
    if cfg.get("non_compliant"):
        insights["Operational Excellence"]["findings"].append(
            f"{cfg['non_compliant']} non-compliant AWS Config evaluations"
        )

    if critical > 0:
        health = "Critical"
    elif warnings > 5:
        health = "Needs Improvement"
    else:
        health = "Good"

    return {
        "overall_health": health,
        "critical_issues": critical,
        "warnings": warnings,
        "well_architected_insights": insights,
    }


def build_snapshot(categories: dict) -> dict:
    """Aggregate per-collector outcome dicts into the environment snapshot.

    ``categories`` maps collector name to ``CollectorOutcome.to_dict()`` output.
    """
    names = [n for n in COLLECTORS if n in categories] + sorted(set(categories) - set(COLLECTORS))
    errors, warnings = [], []
    for name in names:
        cat = categories[name]
        if cat.get("status") == "ok":
            continue
        entry = {"service": name, "category": cat.get("error_category"), "message": cat.get("message")}
        (warnings if cat.get("error_category") == SUBSCRIPTION_REQUIRED else errors).append(entry)

    return {
        "categories": {name: categories[name] for name in names},
        "service_status": {
            "errors": errors,
            "warnings": warnings,
            "successful_services": sum(1 for n in names if categories[n].get("status") == "ok"),
            "total_services": len(names),
        },
        "summary": generate_summary({name: categories[name].get("data") for name in names}),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Provider ─────────────────────────────────────────────────────────────────

class AWSEnvironmentProvider:
    """Collects the environment snapshot for a review.

    Usage:
        provider = AWSEnvironmentProvider.from_app(app)
        snapshot = provider.collect()
        cost = provider.analyze("cost", days=14)
    """

    COLLECTORS = COLLECTORS

    def __init__(
        self,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5,
        read_timeout: float = 30,
        max_attempts: int = 3,
        collector_timeout: float = 60,
        credential_report_wait: float = 2.0,
        client_factory=None,
    ):
        self.region = region
        self.collector_timeout = collector_timeout
        self.credential_report_wait = credential_report_wait
        self._boto_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        )
        self._client_factory = client_factory
        self._session = None
        self._clients: dict[str, object] = {}
        self._clients_lock = threading.Lock()

    @classmethod
    def from_app(cls, app, **overrides):
        cfg = app.config
        kwargs = {
            "region": cfg.get("AWS_REGION", "us-east-1"),
            "connect_timeout": cfg.get("AWS_CONNECT_TIMEOUT", 5),
            "read_timeout": cfg.get("AWS_READ_TIMEOUT", 30),
            "max_attempts": cfg.get("AWS_MAX_ATTEMPTS", 3),
            "collector_timeout": cfg.get("COLLECTOR_TIMEOUT_SECONDS", 60),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def client(self, service: str):
        with self._clients_lock:
            if service not in self._clients:
                region = _SUPPORT_REGION if service == "support" else self.region
                factory = self._client_factory or self._boto_session().client
                self._clients[service] = factory(
                    service, region_name=region, config=self._boto_config,
                )
            return self._clients[service]

    def _boto_session(self):
        # Called with _clients_lock held
        if self._session is None:
            self._session = boto3.session.Session()
        return self._session

    # ── Comprehensive collection ──────────────────────────────────────────

    def collect(self) -> dict:
        """Run all collectors concurrently and aggregate their outcomes.

        Never raises for individual collector failures. Returns:
            {categories: {name: {status, error_category?, message?, data?}},
             service_status: {errors, warnings, successful_services, total_services},
             summary: {...}, timestamp}
        """
        started = time.perf_counter()
        outcomes = self._run_collectors(self.COLLECTORS)
        snapshot = build_snapshot({name: outcomes[name].to_dict() for name in self.COLLECTORS})
        logger.info("Environment collection finished: %d/%d collectors ok (%.0fms)",
                    snapshot["service_status"]["successful_services"], len(self.COLLECTORS),
                    (time.perf_counter() - started) * 1000)
        return _jsonable(snapshot)

    def refresh(self, snapshot: dict | None, collectors) -> dict:
        """Re-run ``collectors`` and merge their outcomes into ``snapshot``.

        Categories not named keep their previous outcome.
        """
        names = list(dict.fromkeys(collectors))
        unknown = [n for n in names if n not in self.COLLECTORS]
        if unknown:
            raise ValueError(f"Unknown collectors: {', '.join(unknown)}")
        outcomes = self._run_collectors(names)
        categories = dict((snapshot or {}).get("categories") or {})
        for name in names:
            categories[name] = outcomes[name].to_dict()
        logger.info("Environment refreshed: %s", ", ".join(names))
        return _jsonable(build_snapshot(categories))

    def analyze(self, collector: str, **options) -> dict:
        """Run a single collector and return its payload.

        Unlike collect(), failures propagate to the caller.
        """
        if collector not in self.COLLECTORS:
            raise ValueError(f"Unknown collector: {collector}")
        return _jsonable(getattr(self, f"collect_{collector}")(**options))

    def _run_collectors(self, names) -> dict[str, CollectorOutcome]:
        collectors = {name: getattr(self, f"collect_{name}") for name in names}
        outcomes: dict[str, CollectorOutcome] = {}

        executor = ThreadPoolExecutor(max_workers=max(len(collectors), 1), thread_name_prefix="collector")
        try:
            futures = {executor.submit(contextvars.copy_context().run, self._run_collector, name, fn): name
                       for name, fn in collectors.items()}
            done, not_done = wait(futures, timeout=self.collector_timeout)
            for fut in done:
                outcome = fut.result()
                outcomes[outcome.name] = outcome
            for fut in not_done:
                name = futures[fut]
                fut.cancel()
                logger.warning("Collector %s timed out after %.0fs", name, self.collector_timeout,
                               extra={"collector": name, "error_category": TIMEOUT})
                outcomes[name] = CollectorOutcome(
                    name, False, error_category=TIMEOUT,
                    message=f"{name} collection did not finish within {self.collector_timeout:.0f}s",
                    duration_ms=int(self.collector_timeout * 1000),
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return outcomes

    def _run_collector(self, name: str, fn) -> CollectorOutcome:
        start = time.perf_counter()
        try:
            data = fn()
            return CollectorOutcome(name, True, data=data,
                                    duration_ms=int((time.perf_counter() - start) * 1000))
        except Exception as e:
            category = classify_error(e)
            duration_ms = int((time.perf_counter() - start) * 1000)
            log = logger.info if category == SUBSCRIPTION_REQUIRED else logger.warning
            log("Collector %s unavailable (%s): %s", name, category, e,
                extra={"collector": name, "error_category": category})
            placeholder = None
            message = str(e)
            if category == SUBSCRIPTION_REQUIRED and name == "trusted_advisor":
                message = ("Trusted Advisor requires AWS Business or Enterprise Support plan. "
                           "Analysis will continue with other AWS services.")
                placeholder = {
                    "total_checks": 0,
                    "check_results": [],
                    "summary": {"available": False, "reason": "Premium Support subscription required"},
                    "recommendations": [],
                }
            return CollectorOutcome(name, False, data=placeholder, error_category=category,
                                    message=message, duration_ms=duration_ms)

    # ── Collectors ────────────────────────────────────────────────────────

    def collect_trusted_advisor(self) -> dict:
        support = self.client("support")
        checks = support.describe_trusted_advisor_checks(language="en").get("checks", [])
        results = []
        for check in checks:
            try:
                res = support.describe_trusted_advisor_check_result(checkId=check["id"], language="en")
            except ClientError as e:
                logger.debug("No result for Trusted Advisor check %s: %s", check.get("name"), e)
                continue
            results.append({
                "id": check.get("id"),
                "name": check.get("name"),
                "category": check.get("category"),
                "description": check.get("description"),
                "result": {
                    "status": res.get("result", {}).get("status"),
                    "resources_summary": res.get("result", {}).get("resourcesSummary"),
                },
            })
        return {
            "total_checks": len(checks),
            "check_results": results,
            "summary": summarize_trusted_advisor(results),
            "recommendations": trusted_advisor_recommendations(results),
        }

    def collect_cost(self, days: int = 30) -> dict:
        ce = self.client("ce")
        end = date.today()
        start = end - timedelta(days=days)
        cost_data = ce.get_cost_and_usage(
            TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
            Granularity="DAILY",
            Metrics=["UnblendedCost"],
            GroupBy=[{"Type": "DIMENSION", "Key": "SERVICE"}],
        )

        rightsizing = []
        try:
            rs = ce.get_rightsizing_recommendation(Service="AmazonEC2")
            rightsizing = rs.get("RightsizingRecommendations", [])
        except ClientError as e:
            logger.warning("Could not fetch rightsizing recommendations: %s", e,
                           extra={"collector": "cost"})

        return {
            "total_cost": calculate_total_cost(cost_data),
            "top_services": top_services(cost_data),
            "cost_trend": cost_trend(cost_data),
            "daily_costs": daily_costs(cost_data),
            "period_days": days,
            "rightsizing_recommendations": rightsizing,
            "recommendations": cost_recommendations(rightsizing),
        }

    def collect_iam(self) -> dict:
        iam = self.client("iam")

        users = []
        try:
            state = iam.generate_credential_report().get("State")
            for _ in range(5):
                if state == "COMPLETE":
                    break
                time.sleep(self.credential_report_wait)
                state = iam.generate_credential_report().get("State")
            report = iam.get_credential_report()
            users = parse_credential_report(report.get("Content", b""))
        except ClientError as e:
            logger.warning("Could not fetch credential report: %s", e, extra={"collector": "iam"})

        policies = iam.list_policies(Scope="Local", MaxItems=100).get("Policies", [])

        findings = security_findings(users)
        return {
            "credential_report": users,
            "custom_policies": [
                {"name": p.get("PolicyName"), "arn": p.get("Arn"),
                 "attachment_count": p.get("AttachmentCount", 0)}
                for p in policies
            ],
            "security_findings": findings,
            "finding_recommendations": security_recommendations(findings),
            "recommendations": [
                {"type": "mfa_enforcement", "title": "Enable Multi-Factor Authentication",
                 "description": "Enforce MFA for all users with console access", "priority": "high"},
                {"type": "access_key_rotation", "title": "Regular Access Key Rotation",
                 "description": "Implement regular rotation of access keys", "priority": "medium"},
                {"type": "least_privilege", "title": "Principle of Least Privilege",
                 "description": "Review and minimize permissions for all policies", "priority": "high"},
            ],
        }

    def collect_compute(self) -> dict:
        ec2 = self.client("ec2")

        instances = []
        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for inst in reservation.get("Instances", []):
                    instances.append({
                        "instance_id": inst.get("InstanceId"),
                        "instance_type": inst.get("InstanceType"),
                        "state": inst.get("State", {}).get("Name"),
                        "launch_time": inst.get("LaunchTime"),
                        "platform": inst.get("Platform", "Linux"),
                        "vpc_id": inst.get("VpcId"),
                        "subnet_id": inst.get("SubnetId"),
                    })

        volumes = []
        for page in ec2.get_paginator("describe_volumes").paginate():
            for vol in page.get("Volumes", []):
                volumes.append({
                    "volume_id": vol.get("VolumeId"),
                    "size": vol.get("Size"),
                    "volume_type": vol.get("VolumeType"),
                    "state": vol.get("State"),
                    "encrypted": bool(vol.get("Encrypted")),
                    "attachments": vol.get("Attachments", []),
                })

        return {
            "instances": instances,
            "volumes": volumes,
            "instance_analysis": analyze_instances(instances),
            "volume_analysis": analyze_volumes(volumes),
            "recommendations": compute_recommendations(instances, volumes),
        }

    def collect_cloudwatch(self) -> dict:
        cw = self.client("cloudwatch")
        end = datetime.now(timezone.utc)
        stats = cw.get_metric_statistics(
            Namespace="AWS/EC2",
            MetricName="CPUUtilization",
            StartTime=end - timedelta(days=7),
            EndTime=end,
            Period=3600,
            Statistics=["Average", "Maximum"],
        )
        datapoints = sorted(stats.get("Datapoints", []), key=lambda dp: str(dp.get("Timestamp")))
        return {
            "cpu_metrics": datapoints,
            "performance_insights": performance_insights(datapoints),
        }

    def collect_config(self) -> dict:
        config = self.client("config")
        rules = config.describe_config_rules().get("ConfigRules", [])

        results = []
        for rule in rules[:_CONFIG_RULE_LIMIT]:
            name = rule.get("ConfigRuleName")
            try:
                details = config.get_compliance_details_by_config_rule(ConfigRuleName=name)
            except ClientError as e:
                logger.debug("No compliance details for rule %s: %s", name, e)
                continue
            results.append({
                "rule_name": name,
                "description": rule.get("Description"),
                "compliance": [
                    {"ComplianceType": r.get("ComplianceType"),
                     "ResourceId": r.get("EvaluationResultIdentifier", {})
                     .get("EvaluationResultQualifier", {}).get("ResourceId")}
                    for r in details.get("EvaluationResults", [])
                ],
            })

        return {
            "total_rules": len(rules),
            "analyzed_rules": len(results),
            "compliance_results": results,
            "summary": summarize_compliance(results),
        }

    # ── Health ────────────────────────────────────────────────────────────

    def test_connection(self) -> dict:
        """Verify credentials with sts:GetCallerIdentity."""
        try:
            identity = self.client("sts").get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            return {"ok": False, "error": str(e), "region": self.region}
        return {"ok": True, "account": identity.get("Account"), "region": self.region}
