import re
from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """ this is the base class for all models """

    @declared_attr.directive
    def __tablename__(cls):
        """
        snake_case plural of the model name, WebhookEvent -> webhook_events
        """
        return re.sub(r"(?<!^)(?=[A-Z])", "_", cls.__name__).lower() + "s"
