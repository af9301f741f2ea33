"""User-facing alert text: title, message and recommendation.

Text is chosen from fixed tables keyed by alert type and, for threshold
alerts, by severity (LOW and MEDIUM share guidance). A rule may override
any of the three fields.
"""

from __future__ import annotations

import math
from typing import NamedTuple

from vitalwatch.core.storage.models import AlertSeverity, AlertType, ThresholdRule


class AlertContent(NamedTuple):
    title: str
    message: str
    recommendation: str


class _Template(NamedTuple):
    title: str
    message: str  # may use {value} and {threshold}
    mild: str     # LOW and MEDIUM
    high: str
    emergency: str


_SEVERITY_TEMPLATES: dict[AlertType, _Template] = {
    AlertType.HEART_RATE_HIGH: _Template(
        "Elevated Heart Rate Detected",
        "Your heart rate of {value} is above the threshold of {threshold}.",
        "Consider resting and monitoring your heart rate. Stay hydrated.",
        "Sit down, take slow deep breaths, and rest. Monitor your heart rate.",
        "Seek immediate medical attention if you also feel chest pain, shortness of breath, "
        "or dizziness.",
    ),
    AlertType.HEART_RATE_LOW: _Template(
        "Low Heart Rate Detected",
        "Your heart rate of {value} is below the threshold of {threshold}.",
        "Monitor your heart rate. This may be normal if you're physically fit or resting.",
        "Sit or lie down. If you feel dizzy or lightheaded, have someone stay with you.",
        "Seek immediate medical attention if you feel faint, dizzy, or have difficulty breathing.",
    ),
    AlertType.BLOOD_PRESSURE_HIGH: _Template(
        "Elevated Blood Pressure Detected",
        "Your blood pressure of {value} is above the threshold of {threshold}.",
        "Rest for 5 minutes and take another reading. Reduce sodium intake and stress.",
        "Rest in a quiet place. If your reading remains high after 30 minutes, contact your doctor.",
        "Seek immediate medical attention, especially if you have headache, vision changes, "
        "or chest pain.",
    ),
    AlertType.BLOOD_PRESSURE_LOW: _Template(
        "Low Blood Pressure Detected",
        "Your blood pressure of {value} is below the threshold of {threshold}.",
        "Stay hydrated and consider increasing salt intake slightly if recommended by your doctor.",
        "Sit or lie down and elevate your legs. Drink water and have a salty snack if possible.",
        "Seek immediate medical attention if you feel faint, dizzy, or have blurred vision.",
    ),
    AlertType.OXYGEN_LOW: _Template(
        "Low Oxygen Level Detected",
        "Your oxygen saturation of {value} is below the threshold of {threshold}.",
        "Take slow, deep breaths. Sit upright and ensure you're in well-ventilated area.",
        "Stop any activity, sit upright, and focus on slow deep breathing. Monitor your levels.",
        "Seek immediate medical attention. Low oxygen levels can be dangerous.",
    ),
    AlertType.GLUCOSE_HIGH: _Template(
        "High Blood Glucose Detected",
        "Your blood glucose of {value} is above the threshold of {threshold}.",
        "Drink water and consider light exercise if approved by your doctor. Monitor your levels.",
        "Take insulin if prescribed. Drink water and monitor your levels closely.",
        "Seek immediate medical attention. Very high blood glucose can lead to serious "
        "complications.",
    ),
    AlertType.GLUCOSE_LOW: _Template(
        "Low Blood Glucose Detected",
        "Your blood glucose of {value} is below the threshold of {threshold}.",
        "Consume 15g of fast-acting carbohydrates like juice or glucose tablets.",
        "Consume 15-20g of fast-acting carbohydrates immediately. Have someone stay with you.",
        "Seek immediate medical attention. If conscious, consume sugar. If unconscious, "
        "emergency services are needed.",
    ),
    AlertType.TEMPERATURE_HIGH: _Template(
        "Elevated Body Temperature Detected",
        "Your body temperature of {value} is above the threshold of {threshold}.",
        "Rest, stay hydrated, and consider taking fever-reducing medication if appropriate.",
        "Take fever-reducing medication, use cool compresses, and drink plenty of fluids.",
        "Seek immediate medical attention. High fever can lead to serious complications.",
    ),
    AlertType.TEMPERATURE_LOW: _Template(
        "Low Body Temperature Detected",
        "Your body temperature of {value} is below the threshold of {threshold}.",
        "Warm up gradually with blankets and warm (not hot) drinks.",
        "Move to a warm environment, use blankets, and drink warm fluids. "
        "Have someone stay with you.",
        "Seek immediate medical attention. Low body temperature can be dangerous.",
    ),
    AlertType.IRREGULAR_HEARTBEAT: _Template(
        "Irregular Heartbeat Detected",
        "An irregular heart rhythm has been detected in your recent measurements.",
        "Monitor your heart rate and rhythm. Consider discussing with your doctor at your "
        "next visit.",
        "Rest and avoid stimulants like caffeine. Contact your doctor within 24 hours.",
        "Seek immediate medical attention, especially if you feel chest pain, dizziness, "
        "or shortness of breath.",
    ),
}

# Pattern alerts: one recommendation regardless of severity
_FIXED_CONTENT: dict[AlertType, AlertContent] = {
    AlertType.SLEEP_APNEA: AlertContent(
        "Possible Sleep Apnea Detected",
        "Your sleep data shows patterns consistent with sleep apnea.",
        "Discuss these findings with your healthcare provider. They may recommend a sleep "
        "study for proper diagnosis.",
    ),
    AlertType.STRESS_HIGH: AlertContent(
        "Elevated Stress Level Detected",
        "Your stress level of {value} is above your typical baseline.",
        "Consider stress reduction techniques like deep breathing, meditation, or light "
        "exercise. Ensure you're getting adequate rest.",
    ),
    AlertType.ACTIVITY_LOW: AlertContent(
        "Low Activity Level Alert",
        "Your activity level has been below your goal for several days.",
        "Try to incorporate more movement into your day. Even short walks can be beneficial "
        "for your health.",
    ),
    AlertType.DEHYDRATION: AlertContent(
        "Possible Dehydration Alert",
        "Your hydration metrics suggest you may be dehydrated.",
        "Increase your fluid intake, especially water. Monitor for symptoms like dry mouth, "
        "headache, or dark urine.",
    ),
}

GENERIC_CONTENT = AlertContent(
    "Health Alert",
    "A health metric requires your attention.",
    "Please review your health data and consult with a healthcare professional if needed.",
)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_value(alert_type: AlertType, value: float) -> str:
    """Render a reading with the unit appropriate to ``alert_type``."""
    if not math.isfinite(value):
        return str(value)
    if alert_type in (AlertType.HEART_RATE_HIGH, AlertType.HEART_RATE_LOW):
        return f"{_round_half_up(value)} bpm"
    if alert_type in (AlertType.BLOOD_PRESSURE_HIGH, AlertType.BLOOD_PRESSURE_LOW):
        return f"{_round_half_up(value)} mmHg"
    if alert_type == AlertType.OXYGEN_LOW:
        return f"{_round_half_up(value)}%"
    if alert_type in (AlertType.GLUCOSE_HIGH, AlertType.GLUCOSE_LOW):
        return f"{_round_half_up(value)} mg/dL"
    if alert_type in (AlertType.TEMPERATURE_HIGH, AlertType.TEMPERATURE_LOW):
        return f"{value:.1f}°C"
    return str(float(value))


def generate_alert_content(
    alert_type: AlertType,
    severity: AlertSeverity,
    value: float,
    threshold: float,
    rule: ThresholdRule | None = None,
) -> AlertContent:
    """Build the (title, message, recommendation) triple for an alert.

    Non-empty ``custom_title`` / ``custom_message`` / ``custom_recommendation``
    on ``rule`` replace the generated field of the same name.
    """
    formatted = {
        "value": format_value(alert_type, value),
        "threshold": format_value(alert_type, threshold),
    }

    template = _SEVERITY_TEMPLATES.get(alert_type)
    if template is not None:
        if severity == AlertSeverity.EMERGENCY:
            recommendation = template.emergency
        elif severity == AlertSeverity.HIGH:
            recommendation = template.high
        else:
            recommendation = template.mild
        content = AlertContent(
            template.title, template.message.format(**formatted), recommendation
        )
    elif alert_type in _FIXED_CONTENT:
        fixed = _FIXED_CONTENT[alert_type]
        content = fixed._replace(message=fixed.message.format(**formatted))
    else:
        content = GENERIC_CONTENT

    if rule is not None:
        content = AlertContent(
            rule.custom_title or content.title,
            rule.custom_message or content.message,
            rule.custom_recommendation or content.recommendation,
        )
    return content
