"""Connect to, host, and exchange text and images over the Nordic UART BLE service."""
