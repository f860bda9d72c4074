from .supervisor import ExecutionResult, ExecutorSupervisor

__all__ = ["ExecutionResult", "ExecutorSupervisor"]
