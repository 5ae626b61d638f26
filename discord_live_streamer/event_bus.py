import logging
from typing import Any, Callable, Dict, List, Optional

_LOGGER = logging.getLogger(__name__)

# Topics published by the pipeline components
TRANSCODER_EXITED = "transcoder_exited"
PLAYBACK_FINISHED = "playback_finished"
VOICE_DISCONNECTED = "voice_disconnected"
# Published by the supervisor on every state change
STREAM_STATE = "stream_state"


class EventBus:
    """A simple synchronous publish/subscribe event bus.

    Listeners run on the publishing thread. Listeners that need the event
    loop must marshal onto it themselves.
    """

    def __init__(self):
        self.topics: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        """
        Subscribes a listener to a topic.
        """
        if topic not in self.topics:
            self.topics[topic] = []
        self.topics[topic].append(listener)

    def unsubscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        listeners = self.topics.get(topic, [])
        if listener in listeners:
            listeners.remove(listener)

    def publish(self, topic: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Publishes an event to all subscribed listeners.
        """
        if data is None:
            data = {}

        data['__topic'] = topic

        listeners = list(self.topics.get(topic, []))
        for listener in listeners:
            try:
                listener(data)
            except Exception:
                _LOGGER.exception("Error in event listener for topic %s", topic)

# Client helpers for subscriptions

def subscribe(func: Callable) -> Callable:
    """Decorator to mark a method for event bus subscription."""
    func._event_bus_subscribe = True
    return func

class EventHandler:
    """
    A base class for components that subscribe to events.
    The topic is the name of the decorated method.
    """
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._subscribe_all_methods()

    def _subscribe_all_methods(self):
        """Finds and subscribes all methods decorated with @subscribe."""
        for method_name in dir(self):
            method = getattr(self, method_name)

            if hasattr(method, '_event_bus_subscribe'):
                self.event_bus.subscribe(method_name, method)
                _LOGGER.debug("Subscribed method '%s' to topic '%s'", method_name, method_name)

    def unsubscribe_all(self):
        """Removes the subscriptions made by _subscribe_all_methods."""
        for method_name in dir(self):
            method = getattr(self, method_name)

            if hasattr(method, '_event_bus_subscribe'):
                self.event_bus.unsubscribe(method_name, method)
