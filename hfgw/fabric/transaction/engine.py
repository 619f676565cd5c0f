import asyncio
import collections
import itertools
import logging

from hfgw.fabric.errors import STAGE_COMMIT, STAGE_PROPOSE, CommitRejectedError, CommitTimeoutError, \
    EndorsementError, EndorsementMismatchError, EvaluationError, FabricConnectionError, SubmitError, \
    TopologyUnavailableError
from hfgw.fabric.msp.identity import SigningIdentity, verify_signature
from hfgw.fabric.transaction.transaction_id import TransactionID
from hfgw.fabric.transaction.tx_context import Transaction, TxState
from hfgw.fabric.transaction.tx_proposal import CommitOutcome, EndorsementResponse, TransactionProposal, \
    build_commit_status_request, build_envelope
from hfgw.protos import common_pb2

_logger = logging.getLogger(__name__)

# transaction IDs remembered to reject a repeated nonce
USED_TX_ID_MEMORY = 10000


class TransactionEngine(object):
    """Runs the evaluate and submit protocols against a channel's peers and orderers.

    ``evaluate`` asks a single endorsing peer and returns its payload.
    ``submit`` collects endorsements from every required endorser in
    parallel, checks that they agree, sends the envelope to the ordering
    service and waits for the commit outcome. Each call owns its own
    ``Transaction``; timeouts are applied per stage and per call.
    """

    def __init__(self, wallet, resolver, connection_manager, config):
        self._wallet = wallet
        self._resolver = resolver
        self._connections = connection_manager

        self._propose_timeout = config.get_seconds('propose-timeout')
        self._order_timeout = config.get_seconds('order-timeout')
        self._commit_timeout = config.get_seconds('commit-timeout')
        self._verify_endorsements = config.get_bool('verify-endorsements')

        self._used_tx_ids = set()
        self._used_tx_id_order = collections.deque()
        self._round_robin = itertools.count()

    async def evaluate(self, handle, function, args=(), transient_map=None):
        method = 'evaluate'
        identity, signer = self._signer(handle)
        topology = await self._resolver.resolve(handle.channel_name, handle.contract_name, identity)

        candidates = topology.evaluation_candidates(handle.contract_name, identity.mspid)
        if not candidates:
            raise TopologyUnavailableError(f'No endorsing peer can evaluate {handle.contract_name}'
                                           f' on channel {handle.channel_name}')
        start = next(self._round_robin) % len(candidates)
        targets = candidates[start:] + candidates[:start]
        targets += [p for p in topology.endorsing_peers(handle.contract_name) if p not in targets]

        proposal = self._new_proposal(handle, function, args, signer, targets, transient_map)
        signed_proposal = proposal.sign(signer)
        _logger.debug(f'{method} - {proposal.tx_id} {handle.contract_name}.{function} on {targets[0].name}')

        last_error = None
        for peer in targets:
            try:
                response = await self._send_proposal(peer, identity, signed_proposal, proposal.tx_id)
            except FabricConnectionError as e:
                _logger.warning(f'{method} - peer {peer.name} unreachable, trying the next one: {e}')
                self._resolver.invalidate(handle.channel_name)
                e.tx_id = proposal.tx_id
                last_error = e
                continue
            except asyncio.TimeoutError:
                _logger.warning(f'{method} - peer {peer.name} timed out, trying the next one')
                last_error = EvaluationError(f'Evaluation of {function} timed out on {peer.name}',
                                             tx_id=proposal.tx_id)
                continue

            if not response.is_success():
                _logger.info(f'{method} - peer {peer.name} returned status {response.status}: {response.message}')
                raise EvaluationError(f'Evaluation of {function} failed on peer {peer.name}',
                                      remote_message=response.message, tx_id=proposal.tx_id)
            return response.payload

        raise last_error

    async def submit(self, handle, function, args=(), transient_map=None):
        method = 'submit'
        identity, signer = self._signer(handle)
        topology = await self._resolver.resolve(handle.channel_name, handle.contract_name, identity)
        endorsers = topology.endorsers_for(handle.contract_name)

        transaction = Transaction(self._new_proposal(handle, function, args, signer, endorsers, transient_map))
        tx_id = transaction.tx_id
        _logger.debug(f'{method} - {tx_id} {handle.contract_name}.{function} to {[p.name for p in endorsers]}')

        signed_proposal = transaction.proposal.sign(signer)
        transaction.transition(TxState.PROPOSED)
        try:
            responses = await self._collect_endorsements(handle, endorsers, identity, signed_proposal, tx_id)
            self._check_agreement(responses, tx_id)
        except (EndorsementError, FabricConnectionError) as e:
            transaction.transition(TxState.ENDORSEMENT_FAILED)
            _logger.error(f'{method} - {tx_id} endorsement failed: {e}')
            raise
        transaction.endorsements = responses
        transaction.result = responses[0].payload
        transaction.transition(TxState.ENDORSED)

        envelope = build_envelope(transaction.proposal, responses, signer)
        try:
            await self._order(topology.orderers, identity, envelope, tx_id)
        except SubmitError as e:
            transaction.transition(TxState.SUBMIT_FAILED)
            _logger.error(f'{method} - {tx_id} ordering failed: {e}')
            raise
        transaction.transition(TxState.ORDERED)

        request = build_commit_status_request(handle.channel_name, tx_id, signer)
        commit_peers = topology.commit_peers(identity.mspid, endorsers)
        try:
            outcome = await asyncio.wait_for(
                self._query_commit_status(commit_peers, identity, request, tx_id, self._commit_timeout),
                self._commit_timeout)
        except asyncio.TimeoutError:
            transaction.transition(TxState.COMMIT_TIMEOUT)
            _logger.warning(f'{method} - {tx_id} commit not observed within {self._commit_timeout}s')
            raise CommitTimeoutError(f'Timed out waiting for transaction {tx_id} to commit; its outcome is'
                                     f' unknown and must be re-queried by transaction ID', tx_id=tx_id)
        except FabricConnectionError as e:
            transaction.transition(TxState.COMMIT_TIMEOUT)
            _logger.warning(f'{method} - {tx_id} no peer could report the commit outcome: {e}')
            raise CommitTimeoutError(f'No peer could report the outcome of transaction {tx_id}; it is'
                                     f' unknown and must be re-queried by transaction ID',
                                     remote_message=e.remote_message or str(e), tx_id=tx_id) from e

        transaction.outcome = outcome
        if not outcome.is_valid():
            transaction.transition(TxState.COMMIT_REJECTED)
            _logger.error(f'{method} - {tx_id} committed as invalid: {outcome.validation_code}')
            raise CommitRejectedError(f'Transaction {tx_id} failed to commit with status code'
                                      f' {outcome.validation_code}', validation_code=outcome.validation_code,
                                      remote_message=outcome.validation_code, tx_id=tx_id)

        transaction.transition(TxState.COMMITTED)
        _logger.info(f'{method} - {tx_id} committed in block {outcome.block_number}')
        return transaction

    async def get_transaction_status(self, handle, tx_id, timeout=None):
        """Ask the ledger for the outcome of an earlier transaction ID."""
        identity, signer = self._signer(handle)
        topology = await self._resolver.resolve(handle.channel_name, handle.contract_name, identity)
        request = build_commit_status_request(handle.channel_name, tx_id, signer)
        timeout = self._commit_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                self._query_commit_status(topology.commit_peers(identity.mspid), identity, request, tx_id, timeout),
                timeout)
        except asyncio.TimeoutError:
            raise CommitTimeoutError(f'Outcome of transaction {tx_id} is still unknown after {timeout}s',
                                     tx_id=tx_id)

    def _signer(self, handle):
        identity = self._wallet.get(handle.identity_label)
        return identity, SigningIdentity(identity)

    def _new_proposal(self, handle, function, args, signer, targets, transient_map):
        tx_id = TransactionID(signer)
        while tx_id.transaction_id in self._used_tx_ids:
            tx_id = TransactionID(signer)
        self._used_tx_ids.add(tx_id.transaction_id)
        self._used_tx_id_order.append(tx_id.transaction_id)
        if len(self._used_tx_id_order) > USED_TX_ID_MEMORY:
            self._used_tx_ids.discard(self._used_tx_id_order.popleft())
        return TransactionProposal(tx_id, handle.channel_name, handle.contract_name, function, args, signer,
                                   targets=targets, transient_map=transient_map)

    async def _send_proposal(self, peer, identity, signed_proposal, tx_id):
        async with self._connections.connection(peer, identity) as connection:
            proposal_response = await asyncio.wait_for(
                connection.process_proposal(signed_proposal, self._propose_timeout), self._propose_timeout)
        return EndorsementResponse(peer.name, tx_id, proposal_response)

    async def _collect_endorsements(self, handle, endorsers, identity, signed_proposal, tx_id):
        tasks = [asyncio.ensure_future(self._endorse(handle, peer, identity, signed_proposal, tx_id))
                 for peer in endorsers]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        errors = [task.exception() for task in tasks if not task.cancelled() and task.exception() is not None]
        if errors:
            raise errors[0]
        return [task.result() for task in tasks]

    async def _endorse(self, handle, peer, identity, signed_proposal, tx_id):
        try:
            response = await self._send_proposal(peer, identity, signed_proposal, tx_id)
        except asyncio.TimeoutError:
            raise EndorsementError(f'Endorsement request to peer {peer.name} timed out',
                                   stage=STAGE_PROPOSE, tx_id=tx_id)
        except FabricConnectionError as e:
            self._resolver.invalidate(handle.channel_name)
            e.tx_id = tx_id
            raise

        if not response.is_success():
            raise EndorsementError(f'Endorsement failed on peer {peer.name} with status {response.status}',
                                   remote_message=response.message, tx_id=tx_id)
        if self._verify_endorsements:
            self._verify_endorsement(response)
        return response

    @staticmethod
    def _verify_endorsement(response):
        certificate = response.endorser_certificate
        if not certificate or not response.signature:
            raise EndorsementError(f'Endorsement from peer {response.peer_name} is not signed',
                                   tx_id=response.tx_id)
        if not verify_signature(certificate, response.signed_bytes(), response.signature):
            raise EndorsementError(f'Endorsement signature from peer {response.peer_name} is invalid',
                                   tx_id=response.tx_id)

    @staticmethod
    def _check_agreement(responses, tx_id):
        first = responses[0]
        for response in responses[1:]:
            if response.rwset_digest != first.rwset_digest or response.payload != first.payload \
                    or response.response_payload != first.response_payload:
                details = ', '.join(f'{r.peer_name}={r.rwset_digest}' for r in responses)
                raise EndorsementMismatchError(f'Endorsers returned different read/write sets: {details}',
                                               tx_id=tx_id)

    async def _order(self, orderers, identity, envelope, tx_id):
        method = '_order'
        if not orderers:
            raise SubmitError('No orderers available for the channel', tx_id=tx_id)

        last_error = None
        for orderer in orderers:
            try:
                async with self._connections.connection(orderer, identity) as connection:
                    ack = await asyncio.wait_for(connection.broadcast(envelope, self._order_timeout),
                                                 self._order_timeout)
            except FabricConnectionError as e:
                _logger.warning(f'{method} - orderer {orderer.name} unreachable: {e}')
                last_error = e
                continue
            except asyncio.TimeoutError:
                # the orderer may still accept the envelope; do not send it elsewhere
                raise SubmitError(f'Timed out sending transaction {tx_id} to orderer {orderer.name}', tx_id=tx_id)

            if ack.status != common_pb2.SUCCESS:
                status = common_pb2.Status.Name(ack.status)
                raise SubmitError(f'Orderer {orderer.name} rejected transaction {tx_id} with status {status}',
                                  remote_message=ack.info or status, tx_id=tx_id)
            _logger.debug(f'{method} - {tx_id} accepted by orderer {orderer.name}')
            return ack

        raise SubmitError(f'Unable to send transaction {tx_id} to any orderer',
                          remote_message=last_error.remote_message or str(last_error), tx_id=tx_id)

    async def _query_commit_status(self, peers, identity, request, tx_id, timeout):
        """Outcome of ``tx_id`` from the first peer that answers.

        ``timeout`` is the caller's whole commit wait and is also each
        peer's gRPC deadline; an exceeded deadline raises ``asyncio.TimeoutError``.
        """
        method = '_query_commit_status'
        last_error = None
        for peer in peers:
            try:
                async with self._connections.connection(peer, identity) as connection:
                    response = await connection.commit_status(request, timeout)
                return CommitOutcome.from_response(tx_id, response)
            except FabricConnectionError as e:
                _logger.warning(f'{method} - peer {peer.name} unreachable for {tx_id}: {e}')
                last_error = e

        if last_error is None:
            raise FabricConnectionError('No peer available to report commit status', stage=STAGE_COMMIT,
                                        tx_id=tx_id)
        last_error.stage = STAGE_COMMIT
        last_error.tx_id = tx_id
        raise last_error
