import jsonschema

from chatloop.tools.base import Tool, normalize_schema


class ToolValidator:
    @staticmethod
    def validate(tool: Tool, arguments: dict) -> tuple[bool, str | None]:
        return ToolValidator.validate_schema(normalize_schema(tool.parameters), arguments)

    @staticmethod
    def validate_schema(schema: dict, arguments: dict) -> tuple[bool, str | None]:
        try:
            jsonschema.validate(instance=arguments, schema=schema)
            return True, None
        except jsonschema.ValidationError as e:
            return False, str(e.message)
