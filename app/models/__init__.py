from app.models.ecm import (  # noqa: F401
    AuditEvent,
    AutoArchiveRule,
    ClassificationActionType,
    ClassificationCriteria,
    ClassificationRule,
    ConditionLogic,
    ConditionOperator,
    Document,
    DocumentReminder,
    FinalDisposition,
    Notification,
    NotificationChannel,
    ReminderType,
    RetentionCategory,
    RetentionPhase,
    RunFrequency,
    TransitionStatus,
    TransitionTask,
)
