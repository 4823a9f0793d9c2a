from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "default"),
            "LOKI_URL": os.getenv("LOKI_URL", "http://localhost:3100/loki/api/v1/push"),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", ""),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "flow_engine_db"),
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY", ""),
            "OPENAI_MODEL": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            "WHATSAPP_API_URL": os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v19.0"),
            "WHATSAPP_PHONE_NUMBER_ID": os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
            "WHATSAPP_ACCESS_TOKEN": os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
            "NOTIFY_WEBHOOK_URL": os.getenv("NOTIFY_WEBHOOK_URL", ""),
            "FLOW_RELOAD_SECONDS": int(os.getenv("FLOW_RELOAD_SECONDS", "300")),
            "CONFIG_CACHE_TTL_SECONDS": int(os.getenv("CONFIG_CACHE_TTL_SECONDS", "60")),
            "MAX_STEPS_PER_INVOCATION": int(os.getenv("MAX_STEPS_PER_INVOCATION", "50")),
            "MESSAGE_PACING_SECONDS": float(os.getenv("MESSAGE_PACING_SECONDS", "0.5")),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
