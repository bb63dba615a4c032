"""
Vulnerability Assessments

Runs a scan through the ``vulnerability_scanner`` evaluator capability,
records its findings and feeds significant ones back into the trigger
router as ``vulnerability_found`` events.
"""

from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from secauto.orchestrator import events
from secauto.orchestrator.capabilities import CapabilityRegistry
from secauto.orchestrator.errors import BackpressureError, CapabilityError
from secauto.orchestrator.events import EventBus
from secauto.store.database import DefinitionStore
from secauto.store.models import (
    AssessmentStatus,
    AssessmentType,
    RecordKind,
    Severity,
    VulnerabilityAssessment,
    VulnerabilityFinding,
    utcnow,
)

logger = structlog.get_logger(__name__)

SCANNER_EVALUATOR = "vulnerability_scanner"
EVENT_SEVERITY_FLOOR = Severity.MEDIUM


class AssessmentRunner:
    """Starts assessments and turns scanner output into findings."""

    def __init__(
        self,
        store: DefinitionStore,
        registry: CapabilityRegistry,
        bus: Optional[EventBus] = None,
        post_event: Optional[Callable[[str, dict[str, Any]], Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.bus = bus or EventBus()
        self.post_event = post_event
        self.clock = clock

    async def start(
        self,
        type: AssessmentType,
        target: str,
        scan_profile: str = "default",
        configuration: Optional[dict[str, Any]] = None,
        executed_by: str = "system",
    ) -> VulnerabilityAssessment:
        """Run an assessment to completion and return the stored record."""
        assessment = VulnerabilityAssessment(
            type=AssessmentType(type),
            target=target,
            scan_profile=scan_profile,
            configuration=dict(configuration or {}),
            executed_by=executed_by,
            status=AssessmentStatus.RUNNING,
            start_time=self.clock(),
        )
        self.store.upsert(RecordKind.VULNERABILITY_ASSESSMENT, assessment)
        log = logger.bind(assessment_id=assessment.id, target=target)
        log.info("Vulnerability assessment started", type=assessment.type.value)

        try:
            raw = await self.registry.invoke_evaluator(SCANNER_EVALUATOR, {
                "type": assessment.type.value,
                "target": target,
                "scan_profile": scan_profile,
                **assessment.configuration,
            })
            assessment.findings = self._parse_findings(assessment.id, raw)
            assessment.status = AssessmentStatus.COMPLETED
        except (CapabilityError, ValueError, KeyError, TypeError) as e:
            assessment.status = AssessmentStatus.FAILED
            assessment.error = str(e)
            log.warning("Vulnerability assessment failed", error=str(e))
        assessment.end_time = self.clock()
        self.store.upsert(RecordKind.VULNERABILITY_ASSESSMENT, assessment)

        await self.bus.emit(events.ASSESSMENT_COMPLETED, {
            "assessment_id": assessment.id,
            "target": target,
            "status": assessment.status.value,
            "findings": len(assessment.findings),
            "error": assessment.error,
        })
        if assessment.status == AssessmentStatus.COMPLETED:
            await self._announce(assessment)
        return assessment

    @staticmethod
    def _parse_findings(assessment_id: str, raw: Any) -> list[VulnerabilityFinding]:
        if isinstance(raw, dict):
            raw = raw.get("findings", [])
        if not isinstance(raw, list):
            raise ValueError(f"Scanner returned {type(raw).__name__}, expected a list of findings")
        for item in raw:
            if not isinstance(item, dict):
                raise ValueError(f"Scanner finding is a {type(item).__name__}, expected an object")
        return [
            VulnerabilityFinding.from_dict({**item, "assessment_id": assessment_id})
            for item in raw
        ]

    async def _announce(self, assessment: VulnerabilityAssessment) -> None:
        if self.post_event is None:
            return
        for finding in assessment.findings:
            if Severity(finding.severity).rank < EVENT_SEVERITY_FLOOR.rank:
                continue
            try:
                await self.post_event("vulnerability_found", {
                    "vulnerability": finding.to_dict(),
                    "target": assessment.target,
                    "assessment_id": assessment.id,
                    "severity": finding.severity.value,
                })
            except BackpressureError as e:
                logger.warning("Finding not routed", finding_id=finding.id, error=str(e))

    def get(self, assessment_id: str) -> Optional[VulnerabilityAssessment]:
        return self.store.get(RecordKind.VULNERABILITY_ASSESSMENT, assessment_id)
