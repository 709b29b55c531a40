"""Protocol codec, device registry and the central and peripheral state machines."""
