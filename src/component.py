# src/component.py
import logging
import shutil
from pathlib import Path

from keboola.component.base import ComponentBase
from keboola.component.exceptions import UserException

from configuration import BulkQuery, Configuration
from salesforce_cli.auth import SalesforceAuthenticator, SalesforceCredentials
from salesforce_cli.client import SalesforceBulkClient
from salesforce_cli.exceptions import BulkApiError
from salesforce_cli.models import BulkQueryResult


class Component(ComponentBase):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.logger = logging.getLogger(__name__)
        self.params = Configuration(**self.configuration.parameters)

    def run(self):
        """
        Main execution code
        """
        params = self.params
        client = self._init_client(params)

        self.logger.info(f"Starting extraction of {len(params.queries)} bulk queries")

        for query in params.queries:
            self.logger.info(f"Processing bulk query: {query.name}")
            self._process_query(client, query, params)

        self.logger.info("Data extraction completed successfully")

    def _init_client(self, params: Configuration) -> SalesforceBulkClient:
        credentials = SalesforceCredentials(
            username=params.username,
            password=params.password,
            security_token=params.security_token,
            client_id=params.client_id,
            client_secret=params.client_secret,
        )
        authenticator = SalesforceAuthenticator(credentials, login_url=params.login_url)
        return SalesforceBulkClient(authenticator, api_version=params.api_version, poll_interval=params.poll_interval)

    def _process_query(self, client: SalesforceBulkClient, query: BulkQuery, params: Configuration):
        """
        Run one bulk query and store its results as an output table
        """
        table = self.create_out_table_definition(f"{query.name}.csv", incremental=query.incremental, has_header=True)

        try:
            result = client.bulk_query_to_file(
                query.soql,
                table.full_path,
                include_archived=query.include_archived,
                max_records=params.page_size,
                max_wait=params.max_wait,
            )
        except BulkApiError:
            raise
        except Exception as e:
            self.logger.error(f"Error processing query {query.name}: {str(e)}")
            raise UserException(f"Failed to process query {query.name}: {str(e)}")

        if not self._has_rows(result):
            self.logger.info(f"Bulk query '{query.name}' returned no results")
            Path(result.file_path).unlink(missing_ok=True)
            return

        if params.debug:
            debug_file = f"bulk_{query.name}_download.csv"
            shutil.copy2(result.file_path, debug_file)
            self.logger.info(f"[DEBUG] Saved bulk results to {debug_file}")

        self.write_manifest(table)
        self.logger.info(
            f"Bulk query '{query.name}' complete: {result.page_count} pages, {result.byte_count} bytes "
            f"(API wait: {result.api_wait_time:.2f}s, download: {result.download_time:.2f}s)"
        )

    @staticmethod
    def _has_rows(result: BulkQueryResult) -> bool:
        """True when the file holds at least one line after the header"""
        if result.byte_count == 0:
            return False
        with open(result.file_path, "rb") as f:
            f.readline()
            return bool(f.read(1))


"""
    Main entrypoint
"""
if __name__ == "__main__":
    try:
        comp = Component()
        # this triggers the run method by default and is controlled by the configuration.action parameter
        comp.execute_action()
    except UserException as exc:
        logging.exception(exc)
        exit(1)
    except Exception as exc:
        logging.exception(exc)
        exit(2)
