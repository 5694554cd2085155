from drivers.portworx.driver import DRIVER_NAME, PortworxDriver

__all__ = ["DRIVER_NAME", "PortworxDriver"]
