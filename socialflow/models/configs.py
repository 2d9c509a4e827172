"""Node configuration schemas and typed config models.

The schema registry (``NODE_SCHEMAS``) is the single description of what each
node type accepts. The editor renders its forms from it and the validator
checks raw node configs against it. Once a definition validates, the engine
works with the typed models in ``CONFIG_MODELS``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Closed set of workflow node types."""
    TRIGGER = "trigger"
    CONTENT = "content"
    SCHEDULE = "schedule"
    FILTER = "filter"
    AUDIENCE = "audience"
    ANALYTICS = "analytics"


class FieldType(str, Enum):
    """Declared value types of config fields."""
    TEXT = "text"
    SELECT = "select"
    BOOLEAN = "boolean"
    NUMBER = "number"
    TAGS = "tags"


class Platform(str, Enum):
    ALL = "All Platforms"
    INSTAGRAM = "Instagram"
    FACEBOOK = "Facebook"
    TWITTER = "Twitter"
    LINKEDIN = "LinkedIn"


class EventType(str, Enum):
    NEW_COMMENT = "New Comment"
    NEW_MESSAGE = "New Message"
    MENTION = "Mention"
    NEW_FOLLOWER = "New Follower"
    POST_REACTION = "Post Reaction"


class ContentType(str, Enum):
    IMAGE = "Image"
    VIDEO = "Video"
    CAROUSEL = "Carousel"
    TEXT = "Text"


class ContentTemplate(str, Enum):
    DEFAULT = "Default"
    PROMOTION = "Promotion"
    ANNOUNCEMENT = "Announcement"
    PRODUCT_LAUNCH = "Product Launch"
    CUSTOM = "Custom"


class ScheduleType(str, Enum):
    IMMEDIATE = "Immediate"
    QUEUE = "Queue"
    SPECIFIC_TIME = "Specific Time"
    BEST_TIME = "Best Time"


class Frequency(str, Enum):
    ONCE = "Once"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


class QueueSlot(str, Enum):
    MORNING = "Morning"
    MIDDAY = "Midday"
    AFTERNOON = "Afternoon"
    EVENING = "Evening"


class FilterCondition(str, Enum):
    CONTAINS = "Contains"
    NOT_CONTAINS = "Doesn't Contain"
    EQUALS = "Equals"
    NOT_EQUALS = "Not Equals"
    GREATER_THAN = "Greater Than"
    LESS_THAN = "Less Than"


class SegmentType(str, Enum):
    ALL_FOLLOWERS = "All Followers"
    NEW_FOLLOWERS = "New Followers"
    ENGAGED = "Engaged Users"
    INACTIVE = "Inactive Users"
    CUSTOM = "Custom Segment"


class MetricType(str, Enum):
    ENGAGEMENT_RATE = "Engagement Rate"
    FOLLOWERS_GROWTH = "Followers Growth"
    REACH = "Reach"
    IMPRESSIONS = "Impressions"
    CLICKS = "Clicks"


class TimeRange(str, Enum):
    LAST_24_HOURS = "Last 24 Hours"
    LAST_7_DAYS = "Last 7 Days"
    LAST_30_DAYS = "Last 30 Days"
    CUSTOM = "Custom"


class FieldSpec(BaseModel):
    """Declaration of a single config field."""
    name: str = Field(..., description="Config key as sent by the editor")
    label: str = Field(..., description="Human readable label")
    field_type: FieldType = Field(..., description="Declared value type")
    required: bool = Field(default=False, description="Whether the field must be present")
    options: Optional[List[str]] = Field(default=None, description="Allowed values for select fields")
    minimum: Optional[float] = Field(default=None, description="Lower bound for number fields")
    integer: bool = Field(default=False, description="Number fields that only accept whole numbers")
    value_format: Optional[str] = Field(default=None, description="Extra format constraint for text fields")
    required_when: Optional[Dict[str, List[str]]] = Field(
        default=None,
        description="Field becomes required when another field holds one of the listed values"
    )
    placeholder: Optional[str] = None


class NodeSchema(BaseModel):
    """Field list of one node type."""
    node_type: NodeType
    name: str
    fields: List[FieldSpec]

    def field(self, name: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def field_names(self) -> List[str]:
        return [spec.name for spec in self.fields]


def _options(enum_cls: Type[Enum]) -> List[str]:
    return [member.value for member in enum_cls]


NODE_SCHEMAS: Dict[NodeType, NodeSchema] = {
    NodeType.TRIGGER: NodeSchema(
        node_type=NodeType.TRIGGER,
        name="Social Trigger",
        fields=[
            FieldSpec(name="platform", label="Platform", field_type=FieldType.SELECT,
                      required=True, options=_options(Platform)),
            FieldSpec(name="eventType", label="Event Type", field_type=FieldType.SELECT,
                      required=True, options=_options(EventType)),
            FieldSpec(name="keywords", label="Keywords (comma-separated)", field_type=FieldType.TAGS,
                      placeholder="e.g., product, pricing, help"),
            FieldSpec(name="filterNegative", label="Filter Negative Content", field_type=FieldType.BOOLEAN),
        ],
    ),
    NodeType.CONTENT: NodeSchema(
        node_type=NodeType.CONTENT,
        name="Content Post",
        fields=[
            FieldSpec(name="contentType", label="Content Type", field_type=FieldType.SELECT,
                      required=True, options=_options(ContentType)),
            FieldSpec(name="platform", label="Platform", field_type=FieldType.SELECT,
                      options=_options(Platform)),
            FieldSpec(name="template", label="Template", field_type=FieldType.SELECT,
                      options=_options(ContentTemplate)),
            FieldSpec(name="message", label="Message", field_type=FieldType.TEXT,
                      required=True, placeholder="Enter your post content here"),
        ],
    ),
    NodeType.SCHEDULE: NodeSchema(
        node_type=NodeType.SCHEDULE,
        name="Schedule",
        fields=[
            FieldSpec(name="scheduleType", label="Schedule Type", field_type=FieldType.SELECT,
                      required=True, options=_options(ScheduleType)),
            FieldSpec(name="frequency", label="Frequency", field_type=FieldType.SELECT,
                      required=True, options=_options(Frequency)),
            FieldSpec(name="queueSlot", label="Queue Slot", field_type=FieldType.SELECT,
                      options=_options(QueueSlot),
                      required_when={"scheduleType": [ScheduleType.QUEUE.value]}),
            FieldSpec(name="delayMinutes", label="Delay (minutes)", field_type=FieldType.NUMBER,
                      minimum=0, integer=True),
            FieldSpec(name="specificTime", label="Specific Time", field_type=FieldType.TEXT,
                      value_format="datetime",
                      required_when={"scheduleType": [ScheduleType.SPECIFIC_TIME.value]},
                      placeholder="e.g., 2024-06-01T09:30:00"),
        ],
    ),
    NodeType.FILTER: NodeSchema(
        node_type=NodeType.FILTER,
        name="Filter",
        fields=[
            FieldSpec(name="condition", label="Condition", field_type=FieldType.SELECT,
                      required=True, options=_options(FilterCondition)),
            FieldSpec(name="field", label="Field", field_type=FieldType.TEXT,
                      required=True, placeholder="e.g., message, username, count"),
            FieldSpec(name="value", label="Value", field_type=FieldType.TEXT,
                      required=True, placeholder="Value to compare against"),
            FieldSpec(name="caseSensitive", label="Case Sensitive", field_type=FieldType.BOOLEAN),
        ],
    ),
    NodeType.AUDIENCE: NodeSchema(
        node_type=NodeType.AUDIENCE,
        name="Audience",
        fields=[
            FieldSpec(name="segmentType", label="Segment Type", field_type=FieldType.SELECT,
                      required=True, options=_options(SegmentType)),
            FieldSpec(name="minEngagement", label="Min. Engagement Rate", field_type=FieldType.NUMBER,
                      minimum=0),
            FieldSpec(name="location", label="Location Filter", field_type=FieldType.TEXT,
                      placeholder="e.g., USA, Europe, Global"),
            FieldSpec(name="includePrivate", label="Include Private Accounts", field_type=FieldType.BOOLEAN),
        ],
    ),
    NodeType.ANALYTICS: NodeSchema(
        node_type=NodeType.ANALYTICS,
        name="Analytics",
        fields=[
            FieldSpec(name="metricType", label="Metric Type", field_type=FieldType.SELECT,
                      required=True, options=_options(MetricType)),
            FieldSpec(name="timeRange", label="Time Range", field_type=FieldType.SELECT,
                      required=True, options=_options(TimeRange)),
            FieldSpec(name="compareWithPrevious", label="Compare with Previous Period",
                      field_type=FieldType.BOOLEAN),
            FieldSpec(name="notifyChanges", label="Notify on Significant Changes",
                      field_type=FieldType.BOOLEAN),
        ],
    ),
}


def is_blank(value: Any) -> bool:
    """Editor forms send cleared inputs as empty strings."""
    return value is None or (isinstance(value, str) and not value.strip())


def clean_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Drop blank values so optional fields fall back to their defaults."""
    return {key: value for key, value in config.items() if not is_blank(value)}


class _NodeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)


class TriggerConfig(_NodeConfig):
    platform: Platform
    event_type: EventType = Field(..., alias="eventType")
    keywords: List[str] = Field(default_factory=list)
    filter_negative: bool = Field(default=False, alias="filterNegative")

    @field_validator("keywords", mode="before")
    @classmethod
    def split_keywords(cls, keywords):
        """Accept the editor's comma-separated text as well as a list."""
        if isinstance(keywords, str):
            keywords = keywords.split(",")
        return [keyword.strip() for keyword in keywords if keyword and keyword.strip()]


class ContentConfig(_NodeConfig):
    content_type: ContentType = Field(..., alias="contentType")
    platform: Platform = Platform.ALL
    template: ContentTemplate = ContentTemplate.DEFAULT
    message: str


class ScheduleConfig(_NodeConfig):
    schedule_type: ScheduleType = Field(..., alias="scheduleType")
    frequency: Frequency
    queue_slot: Optional[QueueSlot] = Field(default=None, alias="queueSlot")
    delay_minutes: int = Field(default=0, ge=0, alias="delayMinutes")
    specific_time: Optional[datetime] = Field(default=None, alias="specificTime")


class FilterConfig(_NodeConfig):
    condition: FilterCondition
    field: str
    value: str
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class AudienceConfig(_NodeConfig):
    segment_type: SegmentType = Field(..., alias="segmentType")
    min_engagement: Optional[float] = Field(default=None, ge=0, alias="minEngagement")
    location: Optional[str] = None
    include_private: bool = Field(default=False, alias="includePrivate")


class AnalyticsConfig(_NodeConfig):
    metric_type: MetricType = Field(..., alias="metricType")
    time_range: TimeRange = Field(..., alias="timeRange")
    compare_with_previous: bool = Field(default=False, alias="compareWithPrevious")
    notify_changes: bool = Field(default=False, alias="notifyChanges")


NodeConfig = Union[TriggerConfig, ContentConfig, ScheduleConfig, FilterConfig, AudienceConfig, AnalyticsConfig]

CONFIG_MODELS: Dict[NodeType, Type[_NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.CONTENT: ContentConfig,
    NodeType.SCHEDULE: ScheduleConfig,
    NodeType.FILTER: FilterConfig,
    NodeType.AUDIENCE: AudienceConfig,
    NodeType.ANALYTICS: AnalyticsConfig,
}


def parse_config(node_type: NodeType, config: Dict[str, Any]) -> NodeConfig:
    """Build the typed config of a node; raises pydantic.ValidationError on bad input."""
    return CONFIG_MODELS[node_type].model_validate(clean_config(config))
