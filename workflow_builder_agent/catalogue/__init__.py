from workflow_builder_agent.catalogue.library import BUNDLED_SNAPSHOT, CapabilityDescriptor, CapabilityLibrary

__all__ = ["BUNDLED_SNAPSHOT", "CapabilityDescriptor", "CapabilityLibrary"]
