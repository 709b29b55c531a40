"""BLE platform adapters."""
