"""Core 领域异常

路由层将这些异常映射为结构化错误响应：
TaskNotFoundError -> 404，InvalidTransitionError / TaskImmutableError -> 409。
"""


class TaskRelayError(Exception):
    """taskrelay 领域异常基类"""

    code = "TASKRELAY_ERROR"


class TaskNotFoundError(TaskRelayError):
    """任务不存在"""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id {task_id} does not exist")
        self.task_id = task_id


class InvalidTransitionError(TaskRelayError, ValueError):
    """非法状态流转"""

    code = "INVALID_TRANSITION"

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(f"Cannot transition task {task_id} from {from_status} to {to_status}")
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class TaskImmutableError(TaskRelayError):
    """已软删除的任务除恢复外不可修改"""

    code = "TASK_IMMUTABLE"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is deleted; only restore is allowed")
        self.task_id = task_id


class TaskStatusConflictError(TaskRelayError):
    """乐观并发检查失败：任务已不在预期状态"""

    code = "TASK_STATUS_CONFLICT"

    def __init__(self, task_id: str, expected_status: str) -> None:
        super().__init__(f"Task {task_id} is no longer in status {expected_status}")
        self.task_id = task_id
        self.expected_status = expected_status
