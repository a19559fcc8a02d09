class BackupSchedulerError(Exception):
    pass


class ConfigurationError(BackupSchedulerError, ValueError):
    pass


class InvalidCronExpressionError(ConfigurationError):
    def __init__(self, cron_expression: str, reason: str = ""):
        self.cron_expression = cron_expression
        message = f"Invalid cron expression '{cron_expression}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidTimeWindowError(ConfigurationError):
    pass


class UnsupportedProtocolError(ConfigurationError):
    def __init__(self, protocol: object):
        self.protocol = protocol
        super().__init__(f"Protocol '{protocol}' is not supported")


class NotFoundError(BackupSchedulerError, LookupError):
    pass


class DeviceNotFoundError(NotFoundError):
    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device with ID '{device_id}' not found")


class ShareNotFoundError(NotFoundError):
    def __init__(self, share_id: str, detail: str = ""):
        self.share_id = share_id
        super().__init__(detail or f"Share with ID '{share_id}' not found")


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID '{job_id}' not found")


class InvalidJobStateError(BackupSchedulerError):
    pass


class JobStoreError(BackupSchedulerError):
    pass


class EngineError(BackupSchedulerError):
    pass


class EngineTimeoutError(EngineError):
    pass


class SchedulerNotRunningError(BackupSchedulerError):
    pass
