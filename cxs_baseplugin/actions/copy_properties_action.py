import logging
from typing import Any, Callable, Dict, Optional

from cxs_baseplugin.actions import property_helper
from cxs_data_model.action import Action, NO_CHANGE, PROFILE_UPDATED
from cxs_data_model.item import Event, PropertyType

logger = logging.getLogger(__name__)

DEFAULT_ROOT_PROPERTY = "target.properties"


class CopyPropertiesAction:
    """
    Copies event properties into the event's profile.

    Parameters read from the action:
        rootProperty: dotted path of the map to copy; when empty, ``event.properties``
            and ``target.properties`` are both copied.
        singleValueStrategy: strategy applied to single-valued properties.
        mandatoryPropTypeSystemTag: system tags a property type must carry for its
            property to be copied.
    """

    def __init__(self, property_type_lookup: Callable[[str], Optional[PropertyType]]):
        self.property_type_lookup = property_type_lookup

    def execute(self, action: Action, event: Event) -> int:
        profile = event.profile
        if profile is None:
            return NO_CHANGE
        mandatory_tags = action.get_parameter("mandatoryPropTypeSystemTag") or []
        single_value_strategy = action.get_parameter("singleValueStrategy")

        changed = False
        for key, value in self.props_to_copy(action, event).items():
            property_type = self.property_type_lookup(key)
            if mandatory_tags and (property_type is None
                                   or not set(mandatory_tags).issubset(property_type.system_tags)):
                continue

            property_name = "properties." + key
            previous = profile.get_property(key)
            if previous is None and property_type is None:
                strategy = property_helper.ALWAYS_SET
            elif isinstance(previous, list) or (previous is None and property_type.multivalued):
                strategy = property_helper.ADD_VALUES
            elif isinstance(value, list):
                if previous is not None:
                    logger.error(f"A single property named {key} is already set on the profile, "
                                 f"it cannot be replaced with a list")
                else:
                    logger.error(f"The property {key} should contain a single value as declared "
                                 f"in its property type")
                continue
            else:
                strategy = single_value_strategy

            if property_helper.set_property(profile, property_name, value, strategy):
                changed = True
        return PROFILE_UPDATED if changed else NO_CHANGE

    @staticmethod
    def props_to_copy(action: Action, event: Event) -> Dict[str, Any]:
        root_property = action.get_parameter("rootProperty")
        props: Dict[str, Any] = {}
        if not root_property:
            props.update(event.properties or {})
            root_property = DEFAULT_ROOT_PROPERTY
        nested = property_helper.get_property(event, root_property)
        if isinstance(nested, dict):
            props.update(nested)
        return props
