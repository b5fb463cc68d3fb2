"""
Appointment lookup.

Scheduling lives in another service; here we only need to know whether an
appointment exists and who its patient and doctor are.
"""

from typing import Dict, Iterable, Optional

import httpx
import structlog

from videoconsult.video.models import Appointment

logger = structlog.get_logger("session")


class InMemoryAppointmentDirectory:
    """Appointments held in process memory (development and tests)."""

    def __init__(self, appointments: Iterable[Appointment] = ()):
        self._appointments: Dict[str, Appointment] = {a.appointment_id: a for a in appointments}

    def add(self, appointment: Appointment) -> None:
        self._appointments[appointment.appointment_id] = appointment

    def set_status(self, appointment_id: str, status: str) -> None:
        appointment = self._appointments[appointment_id]
        self._appointments[appointment_id] = appointment.model_copy(update={"status": status})

    def remove(self, appointment_id: str) -> None:
        self._appointments.pop(appointment_id, None)

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)


class HttpAppointmentDirectory:
    """Reads appointments from the scheduling service's REST API."""

    def __init__(
        self,
        base_url: str,
        service_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Scheduling API root, e.g. https://api.example.com/api/v1
            service_token: Bearer token for service-to-service calls
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self._transport = transport

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/appointments/{appointment_id}", headers=headers)

        if response.status_code == 404:
            return None
        response.raise_for_status()

        data = response.json()
        data = data.get("appointment", data)
        return Appointment(
            appointment_id=data.get("appointment_id") or data.get("appointmentId") or appointment_id,
            patient_id=data.get("patient_id") or data["patientId"],
            doctor_id=data.get("doctor_id") or data["doctorId"],
            status=data.get("status", "scheduled"),
        )


def create_appointment_directory(settings):
    """HTTP directory when APPOINTMENTS_URL is configured, otherwise in-memory."""
    if settings.appointments_url:
        return HttpAppointmentDirectory(settings.appointments_url)
    logger.warning("appointments_in_memory", detail="APPOINTMENTS_URL not set; using empty in-memory directory")
    return InMemoryAppointmentDirectory()
