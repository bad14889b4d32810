"""Modbus Security PKI: role-tagged X.509 credentials and per-request authorization."""
