import enum
import uuid


def get_extra_data_log(obj: object) -> dict:
    """Column values of a model row, ready to be passed as `extra`."""
    data = {}
    for column in obj.__table__.columns:
        value = getattr(obj, column.name)
        # enums go to the log by their stored value
        data[column.name] = value.value if isinstance(value, enum.Enum) else value
    return data


def generate_admin_log_id(operation_type: str) -> str:
    # first letter of every word: adjust_credits -> ac_...
    prefix = "".join(word[0] for word in operation_type.split("_"))
    return f"{prefix}_{uuid.uuid4().hex[:12]}"
