"""
Notification/Dispatch Tool
Delivers assessments to patients (on the channel their session came from)
and case alerts / reminders to ASHA workers through per-channel HTTP gateways.
Failures raise NotificationDeliveryError so the caller records them on the case.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import requests
from django.utils import timezone
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from apps.cases.entities import Case, Reminder
from apps.core.exceptions import NotificationDeliveryError
from apps.triage.symptoms import Assessment

logger = logging.getLogger(__name__)


class NotificationDispatchTool:
    """
    One gateway URL per channel, e.g. {'whatsapp': 'https://gw/whatsapp', 'dashboard': 'https://gw/asha'}
    Transport-level retries are handled by urllib3's Retry on the mounted adapter.
    """

    def __init__(
            self,
            gateways: Dict[str, str],
            worker_channel: str = 'dashboard',
            api_key: Optional[str] = None,
            timeout_seconds: float = 10,
            max_retries: int = 3,
            session: Optional[requests.Session] = None,
    ):
        self.gateways = dict(gateways)
        self.worker_channel = worker_channel
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.session = session or self._create_http_session()

    def _create_http_session(self) -> requests.Session:
        """Create HTTP session with retry strategy"""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    # ------------------------------------------------------------------ #
    # PATIENT SIDE
    # ------------------------------------------------------------------ #

    def send_assessment(self, session_id: str, channel: str, assessment: Assessment,
                        recommendations, case_id: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            'type': 'assessment',
            'session_id': session_id,
            'case_id': case_id,
            'assessment': assessment.to_dict(),
            'recommendations': recommendations.to_dict(),
        }
        return self._post(channel, payload)

    def send_reply(self, session_id: str, channel: str, text: str) -> Dict[str, Any]:
        """Plain text reply, used for clarification questions of queued messages"""
        return self._post(channel, {'type': 'reply', 'session_id': session_id, 'text': text})

    # ------------------------------------------------------------------ #
    # WORKER SIDE
    # ------------------------------------------------------------------ #

    def alert_worker(self, case: Case) -> Dict[str, Any]:
        urgency_prefix = "URGENT" if case.risk_level.rank == 0 else "NOTICE"
        payload = {
            'type': 'new_case',
            'subject': f"{urgency_prefix}: New {case.risk_level.value} case {case.case_id}",
            'case_id': case.case_id,
            'risk_level': case.risk_level.value,
            'needs_manual_review': case.needs_manual_review,
            'symptoms': case.symptom_data.symptom_names,
            'contributing_factors': list(case.assessment.contributing_factors),
            'assigned_asha_id': case.assigned_asha_id,
        }
        return self._post(self.worker_channel, payload)

    def send_reminder(self, reminder: Reminder, case: Case) -> Dict[str, Any]:
        payload = {
            'type': 'reminder',
            'subject': f"REMINDER: Case {case.case_id}",
            'reminder': reminder.to_dict(),
            'risk_level': case.risk_level.value,
            'status': case.status.value,
        }
        return self._post(self.worker_channel, payload)

    # ------------------------------------------------------------------ #
    # TRANSPORT
    # ------------------------------------------------------------------ #

    def _post(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        endpoint = self.gateways.get(channel)
        if not endpoint:
            raise NotificationDeliveryError(f"no gateway configured for channel '{channel}'")

        notification_id = uuid.uuid4().hex
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'AshaCare-Triage/1.0',
            'X-Notification-ID': notification_id,
        }
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        body = dict(payload, notification_id=notification_id, timestamp=timezone.now().isoformat())

        try:
            response = self.session.post(endpoint, json=body, headers=headers, timeout=self.timeout_seconds)
        except requests.exceptions.Timeout as exc:
            raise NotificationDeliveryError(f"{channel} gateway timed out") from exc
        except requests.exceptions.RequestException as exc:
            raise NotificationDeliveryError(f"{channel} gateway unreachable: {exc}") from exc

        if response.status_code not in (200, 201, 202):
            raise NotificationDeliveryError(f"{channel} gateway returned HTTP {response.status_code}: {response.text[:200]}")

        logger.info(f"Notification {payload['type']} delivered via {channel}")
        try:
            return response.json()
        except ValueError:
            return {'raw_response': response.text}
