from datetime import timezone

from cxs_baseplugin.actions import property_helper
from cxs_data_model.action import Action, NO_CHANGE, SESSION_UPDATED, PROFILE_UPDATED
from cxs_data_model.item import Event


class SetPropertyAction:
    """Writes one property on the event's profile, or on its session with ``storeInSession``."""

    action_id = "setPropertyAction"

    def execute(self, action: Action, event: Event) -> int:
        store_in_session = action.get_parameter("storeInSession") is True
        profile = event.profile
        if not store_in_session and (profile is None or profile.is_anonymous_profile()):
            return NO_CHANGE

        value = action.get_parameter("setPropertyValue")
        if value is None:
            value = property_helper.get_integer(action.get_parameter("setPropertyValueInteger"))
        if value == "now" and event.time_stamp is not None:
            value = event.time_stamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        target = event.session if store_in_session else profile
        if property_helper.set_property(target, action.get_parameter("setPropertyName"), value,
                                        action.get_parameter("setPropertyStrategy")):
            return SESSION_UPDATED if store_in_session else PROFILE_UPDATED
        return NO_CHANGE
