"""The six pipeline stages, in execution order:

  intent         — request → IntentDescriptor
  matching       — IntentDescriptor → CapabilityPlan
  structure      — CapabilityPlan → WorkflowGraph (streamable)
  configuration  — fill configuration values
  custom_code    — code + schema for generated nodes
  validation     — structural validation and repair
"""
