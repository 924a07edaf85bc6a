from llama_lifecycle.shared.error_utils import ErrorUtils
from llama_lifecycle.shared.errors import LifecycleError
from llama_lifecycle.use_cases.get_health import GetHealth


class HealthController:
    def __init__(self, get_health_use_case: GetHealth):
        self.get_health_use_case = get_health_use_case

    async def health(self):
        try:
            return await self.get_health_use_case.execute()
        except LifecycleError as e:
            return ErrorUtils.format_error_response(f"Health check failed: {str(e)}", "health_check_error")
