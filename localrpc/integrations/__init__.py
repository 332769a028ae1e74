# Integrations - adapters exposing a pipeline to the outside
# openai: function-calling shapes; service_bus: FastAPI HTTP app
