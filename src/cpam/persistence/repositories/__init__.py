"""CPAM repositories - SQL persistence with in-memory fallbacks."""

from cpam.persistence.repositories.batches import (
    BatchRepository,
    InMemoryBatchRepository,
    SqlBatchRepository,
    clear_in_memory_batch_store,
    get_batch_repository,
)
from cpam.persistence.repositories.formulas import (
    FormulaCatalog,
    InMemoryFormulaRepository,
    clear_in_memory_formula_store,
)
from cpam.persistence.repositories.observations import (
    InMemoryObservationRepository,
    ObservationRepository,
    SqlObservationRepository,
    clear_in_memory_observation_store,
    get_observation_repository,
)
from cpam.persistence.repositories.proposals import (
    ActiveProposalExistsError,
    InMemoryProposalRepository,
    ProposalRepository,
    SqlProposalRepository,
    clear_in_memory_proposal_store,
    get_proposal_repository,
)

__all__ = [
    "ActiveProposalExistsError",
    "BatchRepository",
    "FormulaCatalog",
    "InMemoryBatchRepository",
    "InMemoryFormulaRepository",
    "InMemoryObservationRepository",
    "InMemoryProposalRepository",
    "ObservationRepository",
    "ProposalRepository",
    "SqlBatchRepository",
    "SqlObservationRepository",
    "SqlProposalRepository",
    "clear_in_memory_batch_store",
    "clear_in_memory_formula_store",
    "clear_in_memory_observation_store",
    "clear_in_memory_proposal_store",
    "get_batch_repository",
    "get_observation_repository",
    "get_proposal_repository",
]
