"""Lab Provisioner: ordered, idempotent bring-up of multi-machine lab topologies."""

__version__ = "0.1.0"
