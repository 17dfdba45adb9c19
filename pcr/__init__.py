"""Progressive Canary Reconciler (PCR).

Cluster-resident controller that drives canary experiments:
 - tracks target workloads (services / deployments) per experiment
 - turns workload create/delete events into one-shot experiment actions
 - shifts traffic through Istio DestinationRule / VirtualService pairs
 - converges routing to a stable split when an experiment ends

Routing, target tracking and reconciliation are plain Python objects wired
together explicitly in main.py so every piece can be exercised on its own.
"""
