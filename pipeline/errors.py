"""
管线内部异常定义。
执行器本身不抛异常（统一返回 ExecutionResult），这里只放需要调用方显式处理的错误。
"""


class PipelineError(Exception):
    """所有管线异常的基类。"""


class MissingBindingError(PipelineError):
    """
    required 绑定规则在组件配置中找不到值。
    调用方必须显式处理，不能静默使用默认值。
    """

    def __init__(self, property_path: str, param_name: str, component_type: str | None = None):
        self.property_path = property_path
        self.param_name = param_name
        self.component_type = component_type
        super().__init__(
            f"Required binding '{property_path}' -> '{param_name}' resolved to nothing"
            + (f" (componentType={component_type})" if component_type else "")
        )


class ScriptExecutionError(PipelineError):
    """用户脚本执行失败。"""

    def __init__(self, name: str, cause: Exception):
        self.name = name
        self.cause = cause
        super().__init__(f"Script {name} failed: {cause}")
