from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.paymaster.sponsorship_client import PaymasterClient
from sentra_userop.simulation.simulator import (DEFAULT_SIMULATION_METHOD,
                                                Simulator)
from sentra_userop.submission.submission_client import BundlerClient
from sentra_userop.utils.eth_client_utils import EthClient


class ClientRegistry:
    """
    Constructed once and injected where clients are needed. Clients are
    stateless transport wrappers, memoized per chain id and, for the
    paymaster, per authorization token.
    """

    def __init__(
        self,
        rpc_urls: dict[int, str],
        bundler_urls: dict[int, str],
        paymaster_url: str | None = None,
        simulation_url: str | None = None,
        simulation_method: str = DEFAULT_SIMULATION_METHOD,
        request_timeout: float | None = None,
    ) -> None:
        self.rpc_urls = rpc_urls
        self.bundler_urls = bundler_urls
        self.paymaster_url = paymaster_url
        self.simulation_url = simulation_url
        self.simulation_method = simulation_method
        self.request_timeout = request_timeout
        self._eth_clients: dict[int, EthClient] = {}
        self._bundler_clients: dict[int, BundlerClient] = {}
        self._paymaster_clients: dict[str | None, PaymasterClient] = {}
        self._simulator: Simulator | None = None

    def eth_client(self, chain_id: int) -> EthClient:
        if chain_id not in self._eth_clients:
            self._eth_clients[chain_id] = EthClient(
                self._url_for(self.rpc_urls, chain_id, "rpc"),
                self.request_timeout,
            )
        return self._eth_clients[chain_id]

    def bundler_client(self, chain_id: int) -> BundlerClient:
        if chain_id not in self._bundler_clients:
            self._bundler_clients[chain_id] = BundlerClient(
                self._url_for(self.bundler_urls, chain_id, "bundler"),
                self.request_timeout,
            )
        return self._bundler_clients[chain_id]

    def paymaster_client(self, token: str | None) -> PaymasterClient:
        if self.paymaster_url is None:
            raise InputValidationException(
                InputExceptionCode.InvalidFields, "No paymaster url configured")
        if token not in self._paymaster_clients:
            self._paymaster_clients[token] = PaymasterClient(
                self.paymaster_url, token, self.request_timeout)
        return self._paymaster_clients[token]

    def simulator(self) -> Simulator:
        if self.simulation_url is None:
            raise InputValidationException(
                InputExceptionCode.InvalidFields, "No simulation url configured")
        if self._simulator is None:
            self._simulator = Simulator(
                self.simulation_url, self.simulation_method,
                self.request_timeout)
        return self._simulator

    @staticmethod
    def _url_for(urls: dict[int, str], chain_id: int, kind: str) -> str:
        if chain_id not in urls:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                f"No {kind} url configured for chain {chain_id}",
            )
        return urls[chain_id]
